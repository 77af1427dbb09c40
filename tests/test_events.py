"""
Tests for the domain event system
"""

import pytest

from loan_servicing.events import DomainEvent, EventDispatcher, EventPayload, EventPublisherMixin


@pytest.fixture
def dispatcher():
    return EventDispatcher()


def payload(event_type=DomainEvent.PAYMENT_ALLOCATED, entity_id="42"):
    return EventPayload(event_type=event_type, entity_type="loan", entity_id=entity_id, data={'amount': "10.00"})


class TestEventDispatcher:
    """Test subscribe and publish"""

    def test_subscribe_and_publish(self, dispatcher):
        received = []
        dispatcher.subscribe(DomainEvent.PAYMENT_ALLOCATED, received.append)

        dispatcher.publish(payload())
        dispatcher.publish(payload(DomainEvent.PERIOD_CLOSED))

        assert len(received) == 1
        assert received[0].data == {'amount': "10.00"}

    def test_subscribe_all(self, dispatcher):
        received = []
        dispatcher.subscribe_all(received.append)

        dispatcher.publish(payload())
        dispatcher.publish(payload(DomainEvent.PERIOD_CLOSED))

        assert [e.event_type for e in received] == [DomainEvent.PAYMENT_ALLOCATED, DomainEvent.PERIOD_CLOSED]

    def test_unsubscribe(self, dispatcher):
        received = []
        dispatcher.subscribe(DomainEvent.PAYMENT_ALLOCATED, received.append)
        dispatcher.unsubscribe(DomainEvent.PAYMENT_ALLOCATED, received.append)

        dispatcher.publish(payload())

        assert received == []
        assert dispatcher.get_handler_count(DomainEvent.PAYMENT_ALLOCATED) == 0

    def test_unsubscribe_unknown_handler(self, dispatcher):
        dispatcher.unsubscribe(DomainEvent.PAYMENT_ALLOCATED, print)

    def test_failing_handler_does_not_block_others(self, dispatcher):
        received = []

        def broken(event):
            raise RuntimeError("handler failure")

        dispatcher.subscribe(DomainEvent.PAYMENT_ALLOCATED, broken)
        dispatcher.subscribe(DomainEvent.PAYMENT_ALLOCATED, received.append)

        dispatcher.publish(payload())

        assert len(received) == 1

    def test_handler_count(self, dispatcher):
        dispatcher.subscribe(DomainEvent.PAYMENT_ALLOCATED, print)
        dispatcher.subscribe(DomainEvent.PERIOD_CLOSED, print)
        dispatcher.subscribe_all(print)

        assert dispatcher.get_handler_count(DomainEvent.PERIOD_CLOSED) == 1
        assert dispatcher.get_handler_count() == 3

    def test_payload_to_dict(self):
        data = payload().to_dict()

        assert data['event_type'] == "payment.allocated"
        assert data['entity_id'] == "42"
        assert data['event_id']
        assert data['timestamp']


class TestEventPublisherMixin:
    """Test the publisher mixin"""

    def test_no_dispatcher_is_noop(self):
        publisher = EventPublisherMixin()
        publisher.publish_event(DomainEvent.LOAN_SETTLED, "loan", "42", {})

    def test_publishes_through_dispatcher(self, dispatcher):
        received = []
        dispatcher.subscribe(DomainEvent.LOAN_SETTLED, received.append)
        publisher = EventPublisherMixin()
        publisher.set_event_dispatcher(dispatcher)

        publisher.publish_event(DomainEvent.LOAN_SETTLED, "loan", "42", {'payment_id': "p"})

        assert received[0].entity_id == "42"
        assert received[0].data == {'payment_id': "p"}
