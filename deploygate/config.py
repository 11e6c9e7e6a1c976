"""
Gateway configuration using Pydantic Settings.

Each backend reads its own environment prefix; the root ``Settings`` (``DMS_``)
nests them and picks the adapters to register.
"""

from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class KubernetesSettings(BaseSettings):
    """Kubernetes connection settings shared by the cluster-backed adapters."""

    model_config = SettingsConfigDict(env_prefix="K8S_")

    kubeconfig_path: Optional[str] = Field(
        default=None,
        description="Path to kubeconfig file. If None, auto-discovery and in-cluster config are tried.",
    )
    context: Optional[str] = Field(
        default=None,
        description="Kubernetes context to use. If None, uses current context.",
    )
    auto_discover: bool = Field(
        default=True,
        description="Auto-discover local clusters (env KUBECONFIG, extra paths, default kubeconfig).",
    )
    extra_kubeconfig_paths: list[str] = Field(
        default=[],
        description="Additional kubeconfig paths to try during auto-discovery.",
    )
    context_preference: list[str] = Field(
        default=[],
        description="Preferred contexts to try (in order) when auto-detecting.",
    )


class TelemetrySettings(BaseSettings):
    """Tracing of adapter operations and registry health passes."""

    model_config = SettingsConfigDict(env_prefix="OTEL_")

    enabled: bool = Field(default=False, description="Enable OpenTelemetry tracing")
    service_name: str = Field(default="deploygate", description="Service name for traces")
    exporter_endpoint: str = Field(
        default="http://otel-collector.observability:4317",
        description="OTLP/gRPC collector endpoint",
    )
    insecure: bool = Field(default=True, description="Export without TLS")
    sample_ratio: float = Field(
        default=1.0,
        ge=0.0,
        le=1.0,
        description="Fraction of root spans sampled; child spans follow their parent",
    )


class ArgoCDSettings(BaseSettings):
    """Git reconciliation controller settings."""

    model_config = SettingsConfigDict(env_prefix="ARGOCD_")

    namespace: str = Field(default="argocd", description="Namespace holding Application resources")
    default_project: str = Field(default="default", description="Project assigned to new Applications")
    destination_server: str = Field(
        default="https://kubernetes.default.svc",
        description="Cluster API server new Applications deploy to",
    )
    sync_timeout: int = Field(default=300, description="Sync timeout in seconds")
    auto_sync: bool = Field(default=False, description="Enable automated sync on new Applications")
    prune: bool = Field(default=False, description="Prune resources during automated sync")
    self_heal: bool = Field(default=False, description="Self-heal drift during automated sync")

    # Legacy REST API
    server_url: str = Field(default="", description="ArgoCD API server URL for the REST variant")
    auth_token: str = Field(default="", description="Bearer token for the REST variant")
    insecure: bool = Field(default=False, description="Skip TLS verification for the REST variant")
    request_timeout: float = Field(default=30.0, description="REST request timeout in seconds")


class FluxSettings(BaseSettings):
    """Flux toolkit settings."""

    model_config = SettingsConfigDict(env_prefix="FLUX_")

    namespace: str = Field(default="flux-system", description="Namespace holding Flux resources")
    source_namespace: str = Field(
        default="",
        description="Namespace of source resources. Empty means the Flux namespace.",
    )
    reconcile_timeout: int = Field(default=600, description="Reconcile timeout in seconds")
    interval: str = Field(default="5m", description="Reconciliation interval for new resources")
    suspend: bool = Field(default=False, description="Create resources suspended")
    prune: bool = Field(default=True, description="Enable garbage collection on Kustomizations")
    force: bool = Field(default=False, description="Recreate resources on immutable field changes")
    target_namespace: str = Field(default="default", description="Default target namespace")


class CrossplaneSettings(BaseSettings):
    """Crossplane settings."""

    model_config = SettingsConfigDict(env_prefix="CROSSPLANE_")

    namespace: str = Field(default="crossplane-system", description="Crossplane system namespace")
    revision_activation_policy: str = Field(
        default="Automatic",
        description="Default revisionActivationPolicy for new Configurations",
    )


class HelmSettings(BaseSettings):
    """Helm release manager settings."""

    model_config = SettingsConfigDict(env_prefix="HELM_")

    binary: str = Field(default="helm", description="Path to the helm executable")
    namespace: str = Field(default="default", description="Default release namespace")
    repository_url: str = Field(default="", description="Chart repository URL")
    repository_username: str = Field(default="", description="Chart repository username")
    repository_password: str = Field(default="", description="Chart repository password")
    timeout: int = Field(default=600, description="Install/upgrade timeout in seconds")
    max_history: int = Field(default=10, ge=1, description="Maximum release revisions to keep and report")
    debug: bool = Field(default=False, description="Pass --debug to helm")


class Settings(BaseSettings):
    """Main application settings."""

    model_config = SettingsConfigDict(
        env_prefix="DMS_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    log_level: str = Field(default="INFO", description="Logging level")

    # Registry
    adapters: list[str] = Field(
        default=["argocd", "flux", "crossplane", "helm"],
        description="Adapters to build and register at startup",
    )
    default_adapter: str = Field(default="helm", description="Adapter returned when none is named")

    # Nested settings
    kubernetes: KubernetesSettings = Field(default_factory=KubernetesSettings)
    telemetry: TelemetrySettings = Field(default_factory=TelemetrySettings)
    argocd: ArgoCDSettings = Field(default_factory=ArgoCDSettings)
    flux: FluxSettings = Field(default_factory=FluxSettings)
    crossplane: CrossplaneSettings = Field(default_factory=CrossplaneSettings)
    helm: HelmSettings = Field(default_factory=HelmSettings)


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
