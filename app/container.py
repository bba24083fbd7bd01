"""Dependency injection container.

Wires the collaborators the import pipeline and the ticket consolidator
depend on, so tests and alternative deployments can swap any of them.

Usage:
    from app.container import container

    pipeline = container.import_pipeline()

    # In tests
    with container.import_pipeline.override(ImportPipeline(session_factory=factory)):
        response = client.post(f"/crm/connections/{connection_id}/imports", ...)
"""

from __future__ import annotations

from dependency_injector import containers, providers  # type: ignore[import-not-found]


def _gateway_client_factory():
    from app.services.crm.gateway import BufferedGatewayClient

    return BufferedGatewayClient()


def _inbound_handler_factory(session_factory):
    from app.services.crm.inbox.inbound import GatewayInboundHandler

    return GatewayInboundHandler(session_factory)


def _get_ticket_updater():
    from app.services.crm.tickets import tickets

    return tickets


def _progress_reporter_factory():
    from app.services.crm.imports.progress import ImportProgressReporter

    return ImportProgressReporter()


def _finalizer_factory(session_factory, ticket_updater, reporter):
    from app.services.crm.imports.finalizer import ImportFinalizer

    return ImportFinalizer(session_factory, ticket_updater=ticket_updater, reporter=reporter)


def _import_pipeline_factory(
    session_factory, gateway, inbound_handler, reporter, finalizer, batch_size, enqueue_interval
):
    from app.services.crm.imports.service import ImportPipeline

    return ImportPipeline(
        session_factory=session_factory,
        gateway=gateway,
        inbound_handler=inbound_handler,
        reporter=reporter,
        finalizer=finalizer,
        batch_size=batch_size,
        enqueue_interval=enqueue_interval,
    )


def _ticket_consolidator_factory(session_factory):
    from app.services.crm.consolidation import TicketConsolidator

    return TicketConsolidator(session_factory)


class Container(containers.DeclarativeContainer):
    """Application dependency injection container.

    Collaborators are singletons: the gateway buffer and the import queue
    are process-wide state, and Celery workers resolve the pipeline here too.
    """

    config = providers.Configuration()

    # None means ``SessionLocal``; overridden with a test factory in tests.
    db_session_factory = providers.Object(None)

    gateway_client = providers.Singleton(_gateway_client_factory)
    inbound_handler = providers.Singleton(_inbound_handler_factory, session_factory=db_session_factory)
    ticket_updater = providers.Singleton(_get_ticket_updater)
    progress_reporter = providers.Singleton(_progress_reporter_factory)
    import_finalizer = providers.Singleton(
        _finalizer_factory,
        session_factory=db_session_factory,
        ticket_updater=ticket_updater,
        reporter=progress_reporter,
    )
    import_pipeline = providers.Singleton(
        _import_pipeline_factory,
        session_factory=db_session_factory,
        gateway=gateway_client,
        inbound_handler=inbound_handler,
        reporter=progress_reporter,
        finalizer=import_finalizer,
        batch_size=config.import_batch_size,
        enqueue_interval=config.import_enqueue_interval_seconds,
    )
    ticket_consolidator = providers.Singleton(_ticket_consolidator_factory, session_factory=db_session_factory)


# Global container instance
container = Container()


def get_container() -> Container:
    """Get the global container instance."""
    return container


def configure_container(db_session_factory=None, **config) -> Container:
    """Configure the container with runtime dependencies.

    Args:
        db_session_factory: Callable that returns a new database session
        config: Values for ``container.config`` (e.g. import_batch_size)

    Returns:
        Configured container instance
    """
    if db_session_factory is not None:
        container.db_session_factory.override(providers.Object(db_session_factory))
    if config:
        container.config.from_dict(config)
    return container
