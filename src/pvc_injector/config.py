from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
import os

DEFAULT_COPY_IMAGE = "minio/mc:RELEASE.2020-06-26T19-56-55Z"


def _env_flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class AppConfig:
    service: str = "pvci"
    version: str = os.getenv("PVCI_VERSION", "0.0.0")
    ip: str = os.getenv("PVCI_IP", "127.0.0.1")
    port: int = int(os.getenv("PVCI_PORT", "8070"))
    mode: str = os.getenv("PVCI_MODE", "release")
    volume_overage_percent: int = int(os.getenv("PVCI_VOLUME_OVERAGE_PCT", "25"))
    avg_mps: int = int(os.getenv("PVCI_AVG_MPS", "13"))
    copy_image: str = os.getenv("PVCI_MC_IMAGE", DEFAULT_COPY_IMAGE)
    mount_path: str = os.getenv("PVCI_MOUNT_PATH", "/data")
    job_ttl_seconds: int = int(os.getenv("PVCI_JOB_TTL_SECONDS", "120"))
    history_db_path: Path = Path(os.getenv("PVCI_HISTORY_DB_PATH", "./data/workflows.db"))
    kubeconfig_path: str | None = os.getenv("PVCI_KUBECONFIG") or None
    kube_context: str | None = os.getenv("PVCI_KUBE_CONTEXT") or None
    in_cluster: bool = _env_flag("PVCI_IN_CLUSTER")
    log_level: str = os.getenv("PVCI_LOG_LEVEL", "INFO")
    log_format: str = os.getenv("PVCI_LOG_FORMAT", "json")


def validate_config(config: AppConfig) -> list[str]:
    errors: list[str] = []
    if config.volume_overage_percent < 0:
        errors.append("volume overage percent must be >= 0")
    if config.avg_mps <= 0:
        errors.append("average transfer rate (MB/s) must be positive")
    if config.job_ttl_seconds < 0:
        errors.append("job TTL seconds must be >= 0")
    if config.mode not in {"release", "debug"}:
        errors.append(f"mode must be 'release' or 'debug', got '{config.mode}'")
    if not config.copy_image.strip():
        errors.append("copy image reference is required")
    if not config.mount_path.startswith("/"):
        errors.append("mount path must be absolute")
    return errors


def ensure_directories(config: AppConfig) -> None:
    config.history_db_path.parent.mkdir(parents=True, exist_ok=True)
