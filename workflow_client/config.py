import os
from typing import Optional, Tuple

from pydantic import BaseModel


IMAGE_PROCESSING = "image-processing"
CLUSTERING = "clustering"
DXF_EXPORT = "dxf-export"

SERVICES = (IMAGE_PROCESSING, CLUSTERING, DXF_EXPORT)


class Endpoints:
    # image-processing
    PROCESS_IMAGE = "/process-image"
    SESSION = "/session"
    # clustering
    CREATE_ENHANCED_COLORS = "/create-enhanced-colors"
    PROCESS_CLUSTERING = "/process-clustering"
    # dxf-export
    VALIDATE_EXPORT = "/validate-export"
    EXPORT_DXF = "/export-dxf"
    CAPABILITIES = "/capabilities"
    # all services
    HEALTH = "/health"


ACCEPTED_MEDIA_TYPES: Tuple[str, ...] = ("image/jpeg", "image/jpg", "image/png", "image/webp")
ACCEPTED_EXTENSIONS: Tuple[str, ...] = (".jpeg", ".jpg", ".png", ".webp")

EXPORT_TYPES: Tuple[str, ...] = ("summary", "detailed")


def gateway_url(gateway: str, service: str) -> str:
    return f"{gateway.rstrip('/')}/api/v1/{service}"


class ServiceConfig(BaseModel):
    """Base URLs and call budgets for the three backend services"""

    image_processing_url: str = "http://image-processing:8001"
    clustering_url: str = "http://clustering:8002"
    dxf_export_url: str = "http://dxf-export:8003"

    request_timeout: float = 30.0
    export_timeout: float = 60.0
    health_timeout: float = 10.0

    max_upload_bytes: int = 10 * 1024 * 1024

    def base_url(self, service: str) -> str:
        urls = {
            IMAGE_PROCESSING: self.image_processing_url,
            CLUSTERING: self.clustering_url,
            DXF_EXPORT: self.dxf_export_url,
        }
        try:
            return urls[service].rstrip('/')
        except KeyError:
            raise ValueError(f"Unknown service: {service}")

    @classmethod
    def for_gateway(cls, gateway: str, **overrides) -> "ServiceConfig":
        """All three services namespaced under one gateway"""
        return cls(
            image_processing_url=gateway_url(gateway, IMAGE_PROCESSING),
            clustering_url=gateway_url(gateway, CLUSTERING),
            dxf_export_url=gateway_url(gateway, DXF_EXPORT),
            **overrides
        )

    @classmethod
    def from_env(cls) -> "ServiceConfig":
        defaults = cls()
        gateway: Optional[str] = os.getenv('GATEWAY_URL')

        def _url(env_name: str, service: str, default: str) -> str:
            explicit = os.getenv(env_name)
            if explicit:
                return explicit
            if gateway:
                return gateway_url(gateway, service)
            return default

        return cls(
            image_processing_url=_url('IMAGE_PROCESSING_URL', IMAGE_PROCESSING, defaults.image_processing_url),
            clustering_url=_url('CLUSTERING_URL', CLUSTERING, defaults.clustering_url),
            dxf_export_url=_url('DXF_EXPORT_URL', DXF_EXPORT, defaults.dxf_export_url),
            request_timeout=float(os.getenv('REQUEST_TIMEOUT_SECONDS', defaults.request_timeout)),
            export_timeout=float(os.getenv('EXPORT_TIMEOUT_SECONDS', defaults.export_timeout)),
            health_timeout=float(os.getenv('HEALTH_TIMEOUT_SECONDS', defaults.health_timeout)),
            max_upload_bytes=int(os.getenv('MAX_UPLOAD_BYTES', defaults.max_upload_bytes)),
        )
