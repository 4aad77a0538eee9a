"""
Operator entry point.

Wires the Kubernetes-backed object store, version catalog, event recorder,
reconciler and controller together, then runs the controller either
directly or under Redis leader election.
"""
import asyncio
import os
import socket
import sys

import sentry_sdk
from kubernetes_asyncio import client, config

from dbaas_operator.config.logging import configure_logging, get_logger
from dbaas_operator.config.redis import RedisConnection
from dbaas_operator.config.settings import settings
from dbaas_operator.services.event_recorder import KubernetesEventRecorder
from dbaas_operator.services.object_store import KubernetesObjectStore
from dbaas_operator.services.version_catalog import VersionCatalog
from dbaas_operator.utils.shutdown import ShutdownHandler
from dbaas_operator.workers.controller import Controller
from dbaas_operator.workers.leader_election import LeaderElection
from dbaas_operator.workers.reconciler import Reconciler

# Configure logging
configure_logging()
logger = get_logger(__name__)

# Initialize Sentry for error tracking (production)
if settings.sentry_dsn and settings.is_production:
    sentry_sdk.init(
        dsn=settings.sentry_dsn,
        traces_sample_rate=settings.sentry_traces_sample_rate,
        environment=settings.environment,
        release=settings.app_version,
    )


async def load_kube_config() -> None:
    if settings.k8s_in_cluster:
        config.load_incluster_config()
        logger.info("kube_config_loaded", source="in-cluster")
    else:
        await config.load_kube_config(config_file=settings.kubeconfig_path)
        logger.info("kube_config_loaded", source=settings.kubeconfig_path or "default")


async def main() -> None:
    logger.info(
        "operator_starting",
        version=settings.app_version,
        environment=settings.environment,
        namespace=settings.watch_namespace or "<all>",
    )

    shutdown = ShutdownHandler()
    shutdown.setup()

    await load_kube_config()
    store = KubernetesObjectStore(client.ApiClient())
    catalog = VersionCatalog.from_settings(store, settings)
    recorder = KubernetesEventRecorder(store, settings.operator_name)
    reconciler = Reconciler(store, catalog, recorder, settings)
    controller = Controller(store, reconciler, recorder, settings, shutdown, catalog=catalog)

    try:
        if settings.leader_election_enabled:
            await RedisConnection.connect()
            election = LeaderElection(
                instance_id=f"{socket.gethostname()}-{os.getpid()}",
                lease_duration=settings.leader_lease_duration,
            )
            await election.run(controller.run, shutdown)
        else:
            await controller.run()
    finally:
        await RedisConnection.close()
        await store.close()
        logger.info("operator_stopped")


def run() -> None:
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("operator_interrupted")
        sys.exit(0)


if __name__ == "__main__":
    run()
