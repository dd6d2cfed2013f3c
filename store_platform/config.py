"""
Configuration module — all settings from env vars with sensible defaults.
Follows 12-factor app methodology.

Services never read os.environ themselves: they receive a Settings
instance, so tests can build one with overridden fields.
"""
import os
from dataclasses import dataclass


def _env_bool(name: str, default: str) -> bool:
    return os.environ.get(name, default).lower() == "true"


@dataclass(frozen=True)
class Settings:
    # API
    API_HOST: str = os.environ.get("API_HOST", "0.0.0.0")
    API_PORT: int = int(os.environ.get("API_PORT", "8080"))
    CORS_ORIGINS: str = os.environ.get("CORS_ORIGINS", "*")
    LOG_LEVEL: str = os.environ.get("LOG_LEVEL", "INFO")

    # Kubernetes
    KUBECONFIG: str = os.environ.get("KUBECONFIG", "")
    IN_CLUSTER: bool = _env_bool("IN_CLUSTER", "false")
    K8S_REQUEST_TIMEOUT: float = float(os.environ.get("K8S_REQUEST_TIMEOUT", "30"))
    NAMESPACE_DELETE_TIMEOUT: float = float(os.environ.get("NAMESPACE_DELETE_TIMEOUT", "120"))
    STORE_NS_PREFIX: str = os.environ.get("STORE_NS_PREFIX", "store-")

    # Helm
    HELM_CHART_PATH: str = os.environ.get("HELM_CHART_PATH", "/app/helm/woocommerce")
    HELM_TIMEOUT: float = float(os.environ.get("HELM_TIMEOUT", "300"))
    INGRESS_CLASS: str = os.environ.get("INGRESS_CLASS", "nginx")

    # Platform
    DOMAIN_SUFFIX: str = os.environ.get("DOMAIN_SUFFIX", "store.localhost")
    DEFAULT_ENGINE: str = os.environ.get("DEFAULT_ENGINE", "woocommerce")
    MAX_STORES_PER_OWNER: int = int(os.environ.get("MAX_STORES_PER_OWNER", "10"))
    MAX_STORES_GLOBAL: int = int(os.environ.get("MAX_STORES_GLOBAL", "50"))

    # Provisioning
    MAX_CONCURRENT_PROVISIONS: int = int(os.environ.get("MAX_CONCURRENT_PROVISIONS", "10"))
    PROVISION_TIMEOUT: float = float(os.environ.get("PROVISION_TIMEOUT", "600"))
    READINESS_POLL_INTERVAL: float = float(os.environ.get("READINESS_POLL_INTERVAL", "5"))
    RECONCILE_INTERVAL: float = float(os.environ.get("RECONCILE_INTERVAL", "30"))
    SHUTDOWN_GRACE: float = float(os.environ.get("SHUTDOWN_GRACE", "10"))

    # Persistence
    DATABASE_URL: str = os.environ.get("DATABASE_URL", "sqlite:///./store-platform.db")
    REDIS_URL: str = os.environ.get("REDIS_URL", "")

    # Rate limiting
    RATE_LIMIT: str = os.environ.get("RATE_LIMIT", "100/minute")
    RATE_LIMIT_ENABLED: bool = _env_bool("RATE_LIMIT_ENABLED", "true")

    @property
    def cors_origins(self) -> list[str]:
        return [o.strip() for o in self.CORS_ORIGINS.split(",") if o.strip()]

    def namespace_for(self, store_id: str) -> str:
        return f"{self.STORE_NS_PREFIX}{store_id}"

    def host_for(self, store_name: str) -> str:
        return f"{store_name}.{self.DOMAIN_SUFFIX}"


settings = Settings()
