from dependency_injector import containers, providers

from fulfillment.application.create_booking import CreateBookingUseCase
from fulfillment.application.event_bus import EventBus, build_event_bus
from fulfillment.application.manage_booking import (
    BookingConfirmationHandler,
    BookingLifecycleUseCase,
    CancelBookingUseCase,
)
from fulfillment.application.outbox_maintenance import (
    CleanupDispatchedEventsUseCase,
    GetOutboxMetricsUseCase,
)
from fulfillment.application.payment_orchestrator import PaymentOrchestrator
from fulfillment.application.place_order import ConfirmOrderUseCase, PlaceOrderUseCase
from fulfillment.application.process_outbox_events import ProcessOutboxEventsUseCase
from fulfillment.application.relay_events import KafkaEventRelay
from fulfillment.application.reprocess_dead_letter import ReprocessDeadLetterUseCase
from fulfillment.application.request_refund import RequestRefundUseCase
from fulfillment.application.send_booking_reminders import SendBookingRemindersUseCase
from fulfillment.application.slot_availability import GetAvailableSlotsUseCase
from fulfillment.application.transition_line_item import TransitionLineItemUseCase
from fulfillment.core.retry_policy import RetryPolicy
from fulfillment.infrastructure.container import InfrastructureContainer


class ApplicationContainer(containers.DeclarativeContainer):
    config = providers.Configuration()
    infrastructure_container = providers.Container[InfrastructureContainer](
        InfrastructureContainer,
        config=config.infrastructure,
    )

    transition_line_item_use_case = providers.Singleton[TransitionLineItemUseCase](
        TransitionLineItemUseCase, unit_of_work=infrastructure_container.unit_of_work
    )
    request_refund_use_case = providers.Singleton[RequestRefundUseCase](
        RequestRefundUseCase,
        unit_of_work=infrastructure_container.unit_of_work,
        transition_line_item_use_case=transition_line_item_use_case,
    )
    place_order_use_case = providers.Singleton[PlaceOrderUseCase](
        PlaceOrderUseCase, unit_of_work=infrastructure_container.unit_of_work
    )
    confirm_order_use_case = providers.Singleton[ConfirmOrderUseCase](
        ConfirmOrderUseCase,
        unit_of_work=infrastructure_container.unit_of_work,
        transition_line_item_use_case=transition_line_item_use_case,
    )

    payment_orchestrator = providers.Singleton[PaymentOrchestrator](
        PaymentOrchestrator,
        unit_of_work=infrastructure_container.unit_of_work,
        payment_gateway=infrastructure_container.payment_gateway,
        transition_line_item_use_case=transition_line_item_use_case,
    )
    booking_confirmation_handler = providers.Singleton[BookingConfirmationHandler](
        BookingConfirmationHandler, unit_of_work=infrastructure_container.unit_of_work
    )
    event_relay = providers.Singleton[KafkaEventRelay](
        KafkaEventRelay, kafka_producer=infrastructure_container.kafka_producer
    )
    event_bus = providers.Singleton[EventBus](
        build_event_bus,
        payment_orchestrator=payment_orchestrator,
        booking_confirmation_handler=booking_confirmation_handler,
        event_relay=event_relay,
    )

    retry_policy = providers.Singleton[RetryPolicy](
        RetryPolicy,
        max_retries=config.outbox.max_retries,
        backoff_base_seconds=config.outbox.backoff_base_seconds,
        backoff_factor=config.outbox.backoff_factor,
        backoff_cap_seconds=config.outbox.backoff_cap_seconds,
    )
    process_outbox_events_use_case = providers.Singleton[ProcessOutboxEventsUseCase](
        ProcessOutboxEventsUseCase,
        unit_of_work=infrastructure_container.unit_of_work,
        event_bus=event_bus,
        retry_policy=retry_policy,
        batch_size=config.outbox.batch_size,
        claim_timeout_seconds=config.outbox.claim_timeout_seconds,
    )
    reprocess_dead_letter_use_case = providers.Singleton[ReprocessDeadLetterUseCase](
        ReprocessDeadLetterUseCase, unit_of_work=infrastructure_container.unit_of_work
    )
    get_outbox_metrics_use_case = providers.Singleton[GetOutboxMetricsUseCase](
        GetOutboxMetricsUseCase, unit_of_work=infrastructure_container.unit_of_work
    )
    cleanup_dispatched_events_use_case = providers.Singleton[CleanupDispatchedEventsUseCase](
        CleanupDispatchedEventsUseCase,
        unit_of_work=infrastructure_container.unit_of_work,
        retention_days=config.outbox.retention_days,
    )

    create_booking_use_case = providers.Singleton[CreateBookingUseCase](
        CreateBookingUseCase,
        unit_of_work=infrastructure_container.unit_of_work,
        lock_coordinator=infrastructure_container.lock_coordinator,
        availability_cache=infrastructure_container.availability_cache,
        lock_ttl_seconds=config.booking.lock_ttl_seconds,
    )
    cancel_booking_use_case = providers.Singleton[CancelBookingUseCase](
        CancelBookingUseCase,
        unit_of_work=infrastructure_container.unit_of_work,
        availability_cache=infrastructure_container.availability_cache,
        transition_line_item_use_case=transition_line_item_use_case,
        cancellation_window_hours=config.booking.cancellation_window_hours,
    )
    booking_lifecycle_use_case = providers.Singleton[BookingLifecycleUseCase](
        BookingLifecycleUseCase,
        unit_of_work=infrastructure_container.unit_of_work,
        transition_line_item_use_case=transition_line_item_use_case,
    )
    get_available_slots_use_case = providers.Singleton[GetAvailableSlotsUseCase](
        GetAvailableSlotsUseCase,
        unit_of_work=infrastructure_container.unit_of_work,
        availability_cache=infrastructure_container.availability_cache,
        ttl_seconds=config.booking.availability_ttl_seconds,
    )
    send_booking_reminders_use_case = providers.Singleton[SendBookingRemindersUseCase](
        SendBookingRemindersUseCase,
        unit_of_work=infrastructure_container.unit_of_work,
        transition_line_item_use_case=transition_line_item_use_case,
        lead_hours=config.booking.reminder_lead_hours,
    )
