from __future__ import annotations

from dataclasses import dataclass

import structlog

from .config import AppConfig
from .k8s import KubernetesClients, ResourceGateway, build_resource_gateway
from .maintenance import VolumeMaintenance
from .metadata import ProvisioningHistoryStore
from .objectstore import ObjectStoreGateway, SizeEstimator
from .orchestrator import OrchestratorConfig, ProvisioningOrchestrator
from .status import StatusReporter
from .tasks import WorkflowRunner


@dataclass(frozen=True)
class Services:
    size_estimator: SizeEstimator
    orchestrator: ProvisioningOrchestrator
    runner: WorkflowRunner
    status_reporter: StatusReporter
    maintenance: VolumeMaintenance


def orchestrator_config_from_app_config(config: AppConfig) -> OrchestratorConfig:
    return OrchestratorConfig(
        service=config.service,
        version=config.version,
        overage_percent=config.volume_overage_percent,
        transfer_rate_mbps=config.avg_mps,
        copy_image=config.copy_image,
        mount_path=config.mount_path,
        job_ttl_seconds=config.job_ttl_seconds,
    )


def assemble_services(
    *,
    config: AppConfig,
    gateway: ResourceGateway,
    object_store: ObjectStoreGateway,
    logger: structlog.stdlib.BoundLogger,
    history_store: ProvisioningHistoryStore | None = None,
) -> Services:
    size_estimator = SizeEstimator(object_store, logger=logger)
    orchestrator = ProvisioningOrchestrator(
        gateway=gateway,
        size_estimator=size_estimator,
        config=orchestrator_config_from_app_config(config),
        logger=logger,
    )
    return Services(
        size_estimator=size_estimator,
        orchestrator=orchestrator,
        runner=WorkflowRunner(
            orchestrator=orchestrator,
            logger=logger,
            history_store=history_store,
        ),
        status_reporter=StatusReporter(gateway=gateway, logger=logger, history_store=history_store),
        maintenance=VolumeMaintenance(gateway=gateway, logger=logger),
    )


def build_services(
    *,
    config: AppConfig,
    clients: KubernetesClients,
    logger: structlog.stdlib.BoundLogger,
) -> Services:
    history_store = ProvisioningHistoryStore(config.history_db_path)
    history_store.initialize()
    return assemble_services(
        config=config,
        gateway=build_resource_gateway(clients),
        object_store=ObjectStoreGateway(logger=logger),
        logger=logger,
        history_store=history_store,
    )
