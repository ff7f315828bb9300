import asyncio
import logging
import os
import re
import time
from typing import Any, Dict, List, Optional, Type, TypeVar

import httpx
from opentelemetry import trace
from pydantic import BaseModel, ValidationError

from .config import (
    ACCEPTED_EXTENSIONS,
    ACCEPTED_MEDIA_TYPES,
    CLUSTERING,
    DXF_EXPORT,
    EXPORT_TYPES,
    IMAGE_PROCESSING,
    SERVICES,
    Endpoints,
    ServiceConfig,
)
from .errors import (
    ExportBlocked,
    InvalidSelection,
    InvalidUpload,
    MalformedResponse,
    NetworkError,
    ServiceError,
    WorkflowError,
)
from .models import (
    BedData,
    ClusteringRequest,
    ClusteringResult,
    EnhancedColors,
    EnhancedColorsRequest,
    EnhancedColorsResponse,
    ExportArtifact,
    ExportCapabilities,
    ExportDxfRequest,
    HealthStatus,
    ImageUpload,
    ProcessingResult,
    ServicesHealth,
    SessionInfo,
    ValidateExportRequest,
    ValidateExportResponse,
    WorkflowOutcome,
)
from .observability.metrics import Metrics, setup_metrics

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

ResponseModel = TypeVar("ResponseModel", bound=BaseModel)

_FILENAME_RE = re.compile(r'filename\*?=(?:UTF-8\'\')?"?([^";]+)"?', re.IGNORECASE)


def _payload(request: BaseModel) -> Dict[str, Any]:
    return request.model_dump(mode="json", exclude_none=True)


def _error_detail(response: httpx.Response) -> Optional[str]:
    """Backend-supplied message, FastAPI style {"detail": ...} when present"""
    try:
        body = response.json()
    except ValueError:
        return response.text.strip() or None
    if isinstance(body, dict):
        detail = body.get("detail") or body.get("message") or body.get("error")
        if isinstance(detail, str):
            return detail
        if detail is not None:
            return str(detail)
    return None


def check_upload(upload: ImageUpload, max_bytes: int) -> None:
    """Client-side pre-check; the image-processing service stays the authority"""
    content_type = (upload.content_type or "").lower()
    extension = os.path.splitext(upload.filename)[1].lower()

    if content_type and content_type != "application/octet-stream":
        if content_type not in ACCEPTED_MEDIA_TYPES:
            raise InvalidUpload(f"Unsupported file type {content_type}: use JPEG, PNG or WebP")
    elif extension not in ACCEPTED_EXTENSIONS:
        raise InvalidUpload(f"Unsupported file {upload.filename}: use JPEG, PNG or WebP")

    if upload.size == 0:
        raise InvalidUpload(f"{upload.filename} is empty")
    if upload.size > max_bytes:
        raise InvalidUpload(
            f"{upload.filename} is {upload.size / (1024 * 1024):.1f} MB, "
            f"the limit is {max_bytes / (1024 * 1024):.0f} MB"
        )


class ServiceClient:
    """Calls the image-processing, clustering and dxf-export backends"""

    def __init__(
        self,
        config: Optional[ServiceConfig] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        metrics: Optional[Metrics] = None,
    ):
        self.config = config or ServiceConfig()
        self._transport = transport
        self.metrics = metrics or setup_metrics()

    def _client(self, service: str, timeout: float) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.config.base_url(service),
            timeout=timeout,
            transport=self._transport,
        )

    async def _send(
        self,
        service: str,
        operation: str,
        method: str,
        path: str,
        timeout: float,
        **kwargs
    ) -> httpx.Response:
        started = time.perf_counter()
        status = "success"
        try:
            async with self._client(service, timeout) as client:
                response = await client.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            status = "network_error"
            logger.error(f"{service} {operation} timed out after {timeout}s")
            raise NetworkError(service, operation, timeout=True, reason=str(e)) from e
        except httpx.TransportError as e:
            status = "network_error"
            logger.error(f"{service} {operation} unreachable: {e}")
            raise NetworkError(service, operation, reason=str(e)) from e
        finally:
            self.metrics.remote_call_duration_seconds.labels(operation=operation).observe(
                time.perf_counter() - started
            )
            if status != "success":
                self.metrics.remote_calls_total.labels(
                    service=service, operation=operation, status=status
                ).inc()

        if response.is_error:
            detail = _error_detail(response)
            logger.error(f"{service} {operation} failed: {response.status_code} - {detail}")
            self.metrics.remote_calls_total.labels(
                service=service, operation=operation, status="service_error"
            ).inc()
            raise ServiceError(service, operation, response.status_code, detail)

        return response

    def _parse(
        self,
        service: str,
        operation: str,
        response: httpx.Response,
        model: Type[ResponseModel],
    ) -> ResponseModel:
        try:
            result = model.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            self._malformed(service, operation)
            raise MalformedResponse(service, operation, str(e)) from e
        self.metrics.remote_calls_total.labels(
            service=service, operation=operation, status="success"
        ).inc()
        return result

    def _malformed(self, service: str, operation: str) -> None:
        logger.error(f"{service} {operation} returned a malformed response")
        self.metrics.remote_calls_total.labels(
            service=service, operation=operation, status="malformed_response"
        ).inc()

    # Image processing

    async def upload_image(self, upload: ImageUpload) -> ProcessingResult:
        """Upload an image and detect its beds"""
        check_upload(upload, self.config.max_upload_bytes)

        with tracer.start_as_current_span("upload_image") as span:
            span.set_attribute("file.name", upload.filename)
            span.set_attribute("file.size_bytes", upload.size)
            files = {"file": (upload.filename, upload.content, upload.content_type or "application/octet-stream")}
            response = await self._send(
                IMAGE_PROCESSING, "process_image", "POST", Endpoints.PROCESS_IMAGE,
                self.config.request_timeout, files=files
            )
            result = self._parse(IMAGE_PROCESSING, "process_image", response, ProcessingResult)
            span.set_attribute("session_id", result.session_id)
            span.set_attribute("beds_detected", len(result.bed_data))
            logger.info(f"Processed {upload.filename}: session={result.session_id}, beds={len(result.bed_data)}")
            return result

    async def get_session(self, session_id: str) -> SessionInfo:
        response = await self._send(
            IMAGE_PROCESSING, "get_session", "GET", f"{Endpoints.SESSION}/{session_id}",
            self.config.request_timeout
        )
        return self._parse(IMAGE_PROCESSING, "get_session", response, SessionInfo)

    async def delete_session(self, session_id: str) -> None:
        await self._send(
            IMAGE_PROCESSING, "delete_session", "DELETE", f"{Endpoints.SESSION}/{session_id}",
            self.config.request_timeout
        )
        self.metrics.remote_calls_total.labels(
            service=IMAGE_PROCESSING, operation="delete_session", status="success"
        ).inc()
        logger.info(f"Deleted session: {session_id}")

    # Clustering

    async def create_enhanced_colors(self, bed_data: List[BedData]) -> EnhancedColorsResponse:
        """Derive every enhancement projection for the given beds"""
        with tracer.start_as_current_span("create_enhanced_colors") as span:
            span.set_attribute("bed_count", len(bed_data))
            response = await self._send(
                CLUSTERING, "create_enhanced_colors", "POST", Endpoints.CREATE_ENHANCED_COLORS,
                self.config.request_timeout, json=_payload(EnhancedColorsRequest(bed_data=bed_data))
            )
            result = self._parse(CLUSTERING, "create_enhanced_colors", response, EnhancedColorsResponse)

            mismatched = result.mismatched_methods(len(bed_data))
            if mismatched:
                self._malformed(CLUSTERING, "create_enhanced_colors")
                raise MalformedResponse(
                    CLUSTERING, "create_enhanced_colors",
                    f"row count differs from bed count {len(bed_data)} for: {', '.join(mismatched)}"
                )

            span.set_attribute("enhancement_methods", ",".join(result.methods()))
            return result

    async def process_clustering(
        self,
        bed_data: List[BedData],
        enhanced_colors: EnhancedColors,
        clusters_data: Dict[str, List[int]],
    ) -> ClusteringResult:
        """Resolve a manual cluster assignment into labels and statistics"""
        with tracer.start_as_current_span("process_clustering") as span:
            span.set_attribute("cluster_count", len(clusters_data))
            request = ClusteringRequest(
                bed_data=bed_data,
                enhanced_colors=enhanced_colors,
                clusters_data=clusters_data,
            )
            response = await self._send(
                CLUSTERING, "process_clustering", "POST", Endpoints.PROCESS_CLUSTERING,
                self.config.request_timeout, json=_payload(request)
            )
            result = self._parse(CLUSTERING, "process_clustering", response, ClusteringResult)
            span.set_attribute("clusters_created", len(result.processed_clusters))
            return result

    # DXF export

    async def validate_export(
        self,
        bed_data: List[BedData],
        cluster_dict: Dict[str, str],
    ) -> ValidateExportResponse:
        response = await self._send(
            DXF_EXPORT, "validate_export", "POST", Endpoints.VALIDATE_EXPORT,
            self.config.request_timeout,
            json=_payload(ValidateExportRequest(bed_data=bed_data, cluster_dict=cluster_dict))
        )
        return self._parse(DXF_EXPORT, "validate_export", response, ValidateExportResponse)

    async def export_dxf(
        self,
        bed_data: List[BedData],
        cluster_dict: Dict[str, str],
        export_type: str = 'detailed',
    ) -> ExportArtifact:
        """Export clustered beds; the DXF body is returned as bytes"""
        if export_type not in EXPORT_TYPES:
            raise ValueError(f"Unknown export type: {export_type}")

        with tracer.start_as_current_span("export_dxf") as span:
            span.set_attribute("export_type", export_type)
            request = ExportDxfRequest(bed_data=bed_data, cluster_dict=cluster_dict, export_type=export_type)
            response = await self._send(
                DXF_EXPORT, "export_dxf", "POST", Endpoints.EXPORT_DXF,
                self.config.export_timeout, json=_payload(request)
            )

            if not response.content:
                self._malformed(DXF_EXPORT, "export_dxf")
                raise MalformedResponse(DXF_EXPORT, "export_dxf", "empty DXF body")

            self.metrics.remote_calls_total.labels(
                service=DXF_EXPORT, operation="export_dxf", status="success"
            ).inc()
            span.set_attribute("file_size_bytes", len(response.content))

            match = _FILENAME_RE.search(response.headers.get("content-disposition", ""))
            filename = match.group(1) if match else f"plant_beds_{export_type}.dxf"
            return ExportArtifact(
                filename=filename,
                content=response.content,
                media_type=response.headers.get("content-type", "application/dxf").split(";")[0],
                export_type=export_type,
            )

    async def get_export_capabilities(self) -> ExportCapabilities:
        response = await self._send(
            DXF_EXPORT, "capabilities", "GET", Endpoints.CAPABILITIES,
            self.config.request_timeout
        )
        return self._parse(DXF_EXPORT, "capabilities", response, ExportCapabilities)

    # Health

    async def health(self, service: str) -> HealthStatus:
        response = await self._send(
            service, "health", "GET", Endpoints.HEALTH, self.config.health_timeout
        )
        return self._parse(service, "health", response, HealthStatus)

    async def check_all_services_health(self) -> ServicesHealth:
        """Check health of all dependent services concurrently"""
        results = await asyncio.gather(
            *(self.health(service) for service in SERVICES),
            return_exceptions=True
        )

        services: Dict[str, str] = {}
        details: Dict[str, HealthStatus] = {}
        for service, result in zip(SERVICES, results):
            if isinstance(result, HealthStatus):
                services[service] = "healthy"
                details[service] = result
            elif isinstance(result, NetworkError):
                services[service] = "unreachable"
            elif isinstance(result, Exception):
                services[service] = "unhealthy"
            else:
                raise result

        return ServicesHealth(services=services, details=details)

    # One-shot pipeline

    async def complete_workflow(
        self,
        upload: ImageUpload,
        enhancement_method: str,
        clusters_data: Dict[str, List[int]],
        export_type: str = 'detailed',
    ) -> WorkflowOutcome:
        """Run upload, enhancement, clustering and export back to back without a UI in between"""
        if export_type not in EXPORT_TYPES:
            raise InvalidSelection(export_type, list(EXPORT_TYPES), "Export type")

        started = time.perf_counter()
        session_id = None

        with tracer.start_as_current_span("complete_workflow") as span:
            try:
                processing = await self.upload_image(upload)
                session_id = processing.session_id
                span.set_attribute("session_id", session_id)
                span.set_attribute("bed_count", processing.bed_count)

                beds = list(processing.bed_data)
                enhancement = await self.create_enhanced_colors(beds)
                if enhancement_method not in enhancement.enhanced_colors:
                    raise InvalidSelection(enhancement_method, enhancement.methods())

                clustering = await self.process_clustering(beds, enhancement.enhanced_colors, clusters_data)
                span.set_attribute("cluster_count", len(clustering.processed_clusters))

                cluster_dict = clustering.cluster_name_by_id()
                validation = await self.validate_export(beds, cluster_dict)
                if not validation.can_export:
                    raise ExportBlocked(validation.messages)

                artifact = await self.export_dxf(beds, cluster_dict, export_type)

            except WorkflowError as e:
                logger.error(f"Workflow failed: {e}")
                span.set_attribute("error", True)
                span.set_attribute("error.message", str(e))
                if session_id:
                    await self._compensate_workflow_failure(session_id)
                raise

            total_ms = (time.perf_counter() - started) * 1000
            span.set_attribute("total_workflow_time_ms", total_ms)
            logger.info(f"Workflow completed for session {session_id}: {artifact.filename} in {total_ms:.0f} ms")

            return WorkflowOutcome(
                processing=processing,
                enhancement=enhancement,
                clustering=clustering,
                artifact=artifact,
            )

    async def _compensate_workflow_failure(self, session_id: str) -> None:
        logger.info(f"Executing compensation for failed workflow: {session_id}")
        try:
            await self.delete_session(session_id)
        except WorkflowError as e:
            logger.error(f"Compensation cleanup failed: {e}")
