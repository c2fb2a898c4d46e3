from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    # ==========================================================================
    # Kubernetes Settings
    # ==========================================================================
    # Namespace used when a builder is created without an explicit namespace
    default_namespace: str = "default"

    # kubeconfig context to use outside the cluster (empty = current context)
    k8s_context: str = ""

    # ==========================================================================
    # BuildKit Daemon Settings
    # ==========================================================================
    # Rootless image, pinned so every replica runs the same daemon version
    buildkit_image: str = "moby/buildkit:v0.20.1-rootless"

    # Service exposure mode: LoadBalancer, NodePort or ClusterIP
    default_service_type: str = "LoadBalancer"

    # ==========================================================================
    # Certificate Lifetimes (hours)
    # ==========================================================================
    ca_validity_hours: int = 10 * 365 * 24  # 10 years
    ca_early_renewal_hours: int = 90 * 24  # 90 days

    # 800 days, below the 825-day limit macOS/iOS apply to all certificates,
    # including ones chaining to custom roots (https://support.apple.com/en-us/HT210176)
    cert_validity_hours: int = 800 * 24

    # Logging level: DEBUG, INFO, WARNING, ERROR, CRITICAL
    log_level: str = "INFO"

    class Config:
        env_prefix = "BUILDFARM_"
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"  # Ignore extra fields from .env file
        case_sensitive = False


@lru_cache()
def get_settings():
    return Settings()
