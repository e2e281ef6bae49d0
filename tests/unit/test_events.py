"""
Tests for domain events and the event type registry.
"""

from uuid import UUID, uuid4

import pytest
from pydantic import ValidationError

from outbox_relay.core.events import DomainEvent, EventRegistry, UnknownEventTypeError


class InvoiceSent(DomainEvent):
    event_type = "invoice.sent"
    aggregate_type = "Invoice"

    invoice_id: UUID
    amount: int


class UntaggedEvent(DomainEvent):
    note: str


class TestDomainEvent:
    """Event base class."""

    def test_explicit_tag(self):
        """A class-level event_type should be used as the tag."""
        assert InvoiceSent.type_name() == "invoice.sent"

    def test_default_tag_is_qualified_class_name(self):
        """Without an explicit tag the qualified class name should be used."""
        assert UntaggedEvent.type_name() == f"{__name__}.UntaggedEvent"

    def test_payload_round_trip(self):
        """An event should survive serialisation to its payload and back."""
        event = InvoiceSent(invoice_id=uuid4(), amount=120)
        assert InvoiceSent.from_payload(event.to_payload()) == event

    def test_events_are_immutable(self):
        """Events should be frozen once created."""
        event = InvoiceSent(invoice_id=uuid4(), amount=120)
        with pytest.raises(ValidationError):
            event.amount = 5

    def test_to_dict_includes_tag(self):
        """The dict form should carry the tag alongside the fields."""
        data = InvoiceSent(invoice_id=uuid4(), amount=1).to_dict()
        assert data["event_type"] == "invoice.sent"
        assert data["amount"] == 1


class TestEventRegistry:
    """Tag to class mapping."""

    def test_register_and_decode(self):
        """A registered tag should decode back to its class."""
        registry = EventRegistry()
        registry.register(InvoiceSent)
        event = InvoiceSent(invoice_id=uuid4(), amount=7)

        decoded = registry.decode("invoice.sent", event.to_payload())

        assert isinstance(decoded, InvoiceSent)
        assert decoded.amount == 7
        assert "invoice.sent" in registry
        assert len(registry) == 1
        assert registry.get("invoice.sent") is InvoiceSent

    def test_unknown_tag(self):
        """Decoding an unregistered tag should raise with the tag attached."""
        with pytest.raises(UnknownEventTypeError) as exc_info:
            EventRegistry().decode("nope", "{}")
        assert exc_info.value.event_type == "nope"

    def test_conflicting_registration(self):
        """Two classes should not share a tag."""
        registry = EventRegistry()
        registry.register(InvoiceSent)

        class OtherInvoiceSent(DomainEvent):
            event_type = "invoice.sent"

        with pytest.raises(ValueError):
            registry.register(OtherInvoiceSent)

    def test_registering_twice_is_harmless(self):
        """Registering the same class twice should not duplicate it."""
        registry = EventRegistry()
        registry.register(InvoiceSent)
        registry.register(InvoiceSent)
        assert registry.names() == ["invoice.sent"]
