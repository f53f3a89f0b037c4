"""Run the provisioning API.

Usage:
    pvci --port 8070 --mode debug
    PVCI_KUBECONFIG=~/.kube/config python -m pvc_injector.server

Every flag defaults to its ``PVCI_*`` environment variable.
"""

from __future__ import annotations

import argparse
from dataclasses import replace
import sys

import uvicorn

from .api import create_app
from .config import AppConfig, ensure_directories, validate_config
from .k8s import KubernetesAuthenticationError, load_kubernetes_clients
from .log import configure_logging, get_logger
from .metrics import record_service_info
from .services import build_services


def parse_args(argv: list[str] | None, defaults: AppConfig) -> AppConfig:
    parser = argparse.ArgumentParser(prog="pvci", description="Provision PVCs pre-populated from S3/MinIO objects.")
    parser.add_argument("--ip", default=defaults.ip, help="Server IP address to bind to.")
    parser.add_argument("--port", type=int, default=defaults.port, help="Server port.")
    parser.add_argument("--mode", choices=("release", "debug"), default=defaults.mode)
    parser.add_argument(
        "--volume-overage-percent",
        type=int,
        default=defaults.volume_overage_percent,
        help="Extra capacity added to the staging volume for copy buffers.",
    )
    parser.add_argument(
        "--avg-mps",
        type=int,
        default=defaults.avg_mps,
        help="Average transfer speed in megabytes per second, used to estimate the copy timeout.",
    )
    parser.add_argument("--mc-image", default=defaults.copy_image, help="MinIO client image used by copy jobs.")
    parser.add_argument("--kubeconfig", default=defaults.kubeconfig_path)
    parser.add_argument("--context", default=defaults.kube_context)
    parser.add_argument("--in-cluster", action="store_true", default=defaults.in_cluster)
    parser.add_argument("--log-level", default=defaults.log_level)
    args = parser.parse_args(argv)

    return replace(
        defaults,
        ip=args.ip,
        port=args.port,
        mode=args.mode,
        volume_overage_percent=args.volume_overage_percent,
        avg_mps=args.avg_mps,
        copy_image=args.mc_image,
        kubeconfig_path=args.kubeconfig,
        kube_context=args.context,
        in_cluster=args.in_cluster,
        log_level=args.log_level,
    )


def main(argv: list[str] | None = None) -> int:
    config = parse_args(argv, AppConfig())
    errors = validate_config(config)
    if errors:
        for error in errors:
            print(f"Configuration error: {error}", file=sys.stderr)
        return 2

    configure_logging(
        level="DEBUG" if config.mode == "debug" else config.log_level,
        json_output=config.log_format == "json" and config.mode != "debug",
    )
    logger = get_logger(config.service)
    ensure_directories(config)
    record_service_info(version=config.version, mode=config.mode, service=config.service)

    try:
        clients = load_kubernetes_clients(
            kubeconfig_path=config.kubeconfig_path,
            context=config.kube_context,
            in_cluster=config.in_cluster,
        )
    except KubernetesAuthenticationError as error:
        logger.error("server.kubernetes_unavailable", error=str(error))
        return 1

    app = create_app(config=config, services=build_services(config=config, clients=clients, logger=logger))
    logger.info(
        "server.startup",
        service=config.service,
        version=config.version,
        mode=config.mode,
        ip=config.ip,
        port=config.port,
    )
    uvicorn.run(app, host=config.ip, port=config.port, log_config=None)
    return 0


if __name__ == "__main__":
    sys.exit(main())
