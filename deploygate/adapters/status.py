"""
Status normalization.

One state machine per backend, each collapsing native health, sync or
readiness signals onto ``DeploymentStatus`` plus a coarse 0-100 progress
figure. Every function is total: unrecognised and empty inputs resolve to
a concrete status.
"""

from typing import Any, Optional

from ..models import DeploymentCondition, DeploymentStatus
from ..unstructured import nested_str, parse_timestamp

# Git reconciliation controller
ARGOCD_HEALTHY = "Healthy"
ARGOCD_PROGRESSING = "Progressing"
ARGOCD_DEGRADED = "Degraded"
ARGOCD_SUSPENDED = "Suspended"
ARGOCD_MISSING = "Missing"
ARGOCD_SYNCED = "Synced"
ARGOCD_OUT_OF_SYNC = "OutOfSync"


def argocd_status(health: str, sync: str) -> DeploymentStatus:
    """Map Application health and sync status.

    Unknown or empty health resolves to deploying when the Application is
    explicitly OutOfSync (a sync is pending) and to failed otherwise.
    """
    if health == ARGOCD_HEALTHY:
        return DeploymentStatus.DEPLOYED if sync == ARGOCD_SYNCED else DeploymentStatus.DEPLOYING
    if health == ARGOCD_PROGRESSING:
        return DeploymentStatus.DEPLOYING
    if health in (ARGOCD_DEGRADED, ARGOCD_MISSING):
        return DeploymentStatus.FAILED
    if health == ARGOCD_SUSPENDED:
        return DeploymentStatus.PENDING
    if sync == ARGOCD_OUT_OF_SYNC:
        return DeploymentStatus.DEPLOYING
    return DeploymentStatus.FAILED


def argocd_progress(health: str, sync: str) -> int:
    if health == ARGOCD_HEALTHY:
        return 100 if sync == ARGOCD_SYNCED else 90
    if health == ARGOCD_PROGRESSING:
        return 50
    if health == ARGOCD_SUSPENDED:
        return 25
    if health in (ARGOCD_DEGRADED, ARGOCD_MISSING):
        return 0
    return 25 if sync == ARGOCD_OUT_OF_SYNC else 0


def argocd_conditions(health: str, health_message: str, sync: str) -> list[DeploymentCondition]:
    return [
        DeploymentCondition(
            type="Synced",
            status=_bool_status(sync == ARGOCD_SYNCED, known=bool(sync) and sync != "Unknown"),
            reason=sync or "Unknown",
            message=f"Sync status: {sync or 'Unknown'}",
        ),
        DeploymentCondition(
            type="Healthy",
            status=_bool_status(health == ARGOCD_HEALTHY, known=bool(health) and health != "Unknown"),
            reason=health or "Unknown",
            message=health_message,
        ),
    ]


# Condition-based toolkit (HelmRelease and Kustomization)
FLUX_TRANSIENT_REASONS = frozenset({"Progressing", "ArtifactFailed", "DependencyNotReady"})
WAITING_FOR_RECONCILIATION = "Waiting for reconciliation"


def find_condition(conditions: list, condition_type: str) -> Optional[dict[str, Any]]:
    for cond in conditions or []:
        if isinstance(cond, dict) and cond.get("type") == condition_type:
            return cond
    return None


def flux_status(conditions: list) -> tuple[DeploymentStatus, str]:
    """Map the Ready condition to a status and ``"reason: message"`` text."""
    ready = find_condition(conditions, "Ready")
    if ready is None:
        return DeploymentStatus.PENDING, WAITING_FOR_RECONCILIATION

    reason = nested_str(ready, "reason")
    message = nested_str(ready, "message")
    detail = f"{reason}: {message}" if reason and message else reason or message
    status = nested_str(ready, "status")

    if status == "True":
        return DeploymentStatus.DEPLOYED, detail
    if status == "False":
        if reason in FLUX_TRANSIENT_REASONS:
            return DeploymentStatus.DEPLOYING, detail
        return DeploymentStatus.FAILED, detail
    if detail:
        return DeploymentStatus.PENDING, f"{WAITING_FOR_RECONCILIATION} ({detail})"
    return DeploymentStatus.PENDING, WAITING_FOR_RECONCILIATION


_FLUX_PROGRESS = {
    DeploymentStatus.DEPLOYED: 100,
    DeploymentStatus.DEPLOYING: 50,
    DeploymentStatus.PENDING: 25,
    DeploymentStatus.FAILED: 0,
    DeploymentStatus.ROLLING_BACK: 50,
    DeploymentStatus.DELETING: 50,
}


def flux_progress(status: DeploymentStatus) -> int:
    return _FLUX_PROGRESS.get(status, 0)


# Composition controller
def crossplane_status(conditions: list) -> DeploymentStatus:
    """Healthy=False wins over any True condition, then Healthy/Installed=True."""
    healthy = find_condition(conditions, "Healthy")
    if healthy is not None and healthy.get("status") == "False":
        return DeploymentStatus.FAILED
    for cond_type in ("Healthy", "Installed"):
        cond = find_condition(conditions, cond_type)
        if cond is not None and cond.get("status") == "True":
            return DeploymentStatus.DEPLOYED
    return DeploymentStatus.DEPLOYING


_CROSSPLANE_PROGRESS = {
    DeploymentStatus.DEPLOYED: 100,
    DeploymentStatus.DEPLOYING: 50,
    DeploymentStatus.PENDING: 25,
    DeploymentStatus.ROLLING_BACK: 30,
    DeploymentStatus.DELETING: 10,
    DeploymentStatus.FAILED: 0,
}


def crossplane_progress(status: DeploymentStatus) -> int:
    return _CROSSPLANE_PROGRESS.get(status, 0)


# Package-manager releases
_HELM_STATUS = {
    "pending-install": DeploymentStatus.PENDING,
    "pending-upgrade": DeploymentStatus.DEPLOYING,
    "deployed": DeploymentStatus.DEPLOYED,
    "failed": DeploymentStatus.FAILED,
    "pending-rollback": DeploymentStatus.ROLLING_BACK,
    "uninstalling": DeploymentStatus.DELETING,
    "uninstalled": DeploymentStatus.DELETING,
    "superseded": DeploymentStatus.FAILED,
    "unknown": DeploymentStatus.FAILED,
}

_HELM_PROGRESS = {
    "deployed": 100,
    "pending-install": 25,
    "pending-upgrade": 50,
    "pending-rollback": 50,
    "uninstalling": 75,
}


def helm_status(release_status: str) -> DeploymentStatus:
    return _HELM_STATUS.get(release_status, DeploymentStatus.FAILED)


def helm_progress(release_status: str) -> int:
    return _HELM_PROGRESS.get(release_status, 0)


def parse_conditions(conditions: list) -> list[DeploymentCondition]:
    """Convert ``status.conditions`` entries into canonical conditions."""
    result = []
    for cond in conditions or []:
        if not isinstance(cond, dict):
            continue
        result.append(
            DeploymentCondition(
                type=nested_str(cond, "type"),
                status=nested_str(cond, "status", default="Unknown"),
                reason=nested_str(cond, "reason"),
                message=nested_str(cond, "message"),
                last_transition_time=parse_timestamp(cond.get("lastTransitionTime")),
            )
        )
    return result


def _bool_status(value: bool, known: bool = True) -> str:
    if not known:
        return "Unknown"
    return "True" if value else "False"
