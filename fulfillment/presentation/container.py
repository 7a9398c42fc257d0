from dependency_injector import containers, providers

from fulfillment.application.container import ApplicationContainer
from fulfillment.presentation.outbox_worker import OutboxWorker
from fulfillment.presentation.periodic_worker import PeriodicWorker


class PresentationContainer(containers.DeclarativeContainer):
    config = providers.Configuration()
    application = providers.Container[ApplicationContainer](
        ApplicationContainer, config=config
    )

    outbox_worker = providers.Singleton[OutboxWorker](
        OutboxWorker,
        use_case=application.process_outbox_events_use_case,
        poll_interval=config.outbox.poll_interval_seconds,
    )
    reminder_worker = providers.Singleton[PeriodicWorker](
        PeriodicWorker,
        name="booking-reminders",
        job=application.send_booking_reminders_use_case,
        interval=config.booking.reminder_interval_seconds,
    )
    outbox_cleanup_worker = providers.Singleton[PeriodicWorker](
        PeriodicWorker,
        name="outbox-cleanup",
        job=application.cleanup_dispatched_events_use_case,
        interval=config.outbox.cleanup_interval_seconds,
    )
