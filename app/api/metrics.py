from fastapi import APIRouter, Response
from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST, CollectorRegistry
from prometheus_client.multiprocess import MultiProcessCollector
import os

router = APIRouter()

registry = CollectorRegistry()

if 'PROMETHEUS_MULTIPROC_DIR' in os.environ:
    MultiProcessCollector(registry)

auth_failed_logins = Counter(
    'workspace_sync_auth_failed_logins_total',
    'Total number of failed login attempts',
    registry=registry
)

auth_jwt_errors = Counter(
    'workspace_sync_auth_jwt_errors_total',
    'Total number of JWT decode/validation errors',
    registry=registry
)

workspace_saves = Counter(
    'workspace_sync_workspace_saves_total',
    'Total number of accepted workspace writes',
    registry=registry
)

workspace_version_conflicts = Counter(
    'workspace_sync_workspace_version_conflicts_total',
    'Total number of workspace writes rejected by the version check',
    registry=registry
)

workspace_payload_bytes = Histogram(
    'workspace_sync_workspace_payload_bytes',
    'Size of accepted encrypted workspace payloads',
    buckets=[1e3, 1e4, 5e4, 1e5, 5e5, 1e6, 5e6],
    registry=registry
)

share_writes = Counter(
    'workspace_sync_share_writes_total',
    'Total number of accepted shared-table writes',
    labelnames=['role'],
    registry=registry
)

share_version_conflicts = Counter(
    'workspace_sync_share_version_conflicts_total',
    'Total number of shared-table writes rejected by the version check',
    labelnames=['operation'],
    registry=registry
)

share_resolves = Counter(
    'workspace_sync_share_resolves_total',
    'Total number of owner resolutions of pending pushes',
    registry=registry
)

@router.get("/metrics")
async def get_metrics():
    """
    Prometheus metrics endpoint.
    Exposes application metrics in Prometheus text format.
    """
    return Response(content=generate_latest(registry), media_type=CONTENT_TYPE_LATEST)
