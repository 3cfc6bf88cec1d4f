from __future__ import annotations

import json
import logging
from collections.abc import Generator

import pytest
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from leadscope import audit, events
from leadscope.audit import InMemoryAuditSink
from leadscope.context import correlation_scope, get_correlation_id, reset_correlation_id, set_correlation_id
from leadscope.core.config import get_settings
from leadscope.core.database import Base
from leadscope.core.events import DomainEvent, event_bus
from leadscope.logging import CorrelationIdFilter, JsonLogFormatter
from leadscope.metrics import generate_metrics_payload
from leadscope.otel import setup_inmemory_otel, setup_otel
from leadscope.schemas import LeadClose, LeadCreate
from leadscope.security.context import Actor
from leadscope.security.errors import InvalidTransitionError
from leadscope.security.roles import Role
from leadscope.services.leads import LeadService


ADMIN = Actor(id="admin", role=Role.ADMIN, name="Admin", correlation_id="corr-admin")


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def audit_sink() -> Generator[InMemoryAuditSink, None, None]:
    sink = InMemoryAuditSink()
    previous = audit.get_audit_sink()
    audit.set_audit_sink(sink)
    events.published_events.clear()
    yield sink
    audit.set_audit_sink(previous)
    events.published_events.clear()


@pytest.fixture()
def span_exporter() -> InMemorySpanExporter:
    exporter = setup_inmemory_otel("leadscope")
    exporter.clear()
    return exporter


def test_json_formatter_keeps_known_fields_only() -> None:
    record = logging.makeLogRecord(
        {
            "name": "leadscope.services.leads",
            "levelname": "INFO",
            "msg": "lead.%s",
            "args": ("lead_close",),
            "lead_id": "lead-1",
            "hidden_count": 2,
            "password": "secret",
        }
    )
    token = set_correlation_id("corr-log")
    try:
        CorrelationIdFilter().filter(record)
    finally:
        reset_correlation_id(token)

    payload = json.loads(JsonLogFormatter().format(record))

    assert payload["msg"] == "lead.lead_close"
    assert payload["logger"] == "leadscope.services.leads"
    assert payload["correlation_id"] == "corr-log"
    assert payload["fields"] == {"lead_id": "lead-1", "hidden_count": 2}


def test_json_formatter_logs_id_collections_as_counts() -> None:
    record = logging.makeLogRecord({"name": "leadscope.security.visibility", "msg": "branch.visibility_mismatch"})
    record.branch_id = ["b2", "b3"]

    payload = json.loads(JsonLogFormatter(fields={"branch_id"}).format(record))

    assert payload["fields"] == {"branch_id": 2}
    assert "b2" not in json.dumps(payload)


def test_service_spans_carry_actor_and_correlation(db_session: Session, span_exporter: InMemorySpanExporter) -> None:
    service = LeadService()
    lead = service.create_lead(db_session, ADMIN, LeadCreate(payload={"name": "Acme"}))
    service.close_lead(db_session, ADMIN, lead.id, LeadClose(status="Won"))

    spans = {span.name: span for span in span_exporter.get_finished_spans()}
    assert {"leads.create", "leads.close"} <= set(spans)
    assert spans["leads.close"].attributes.get("actor_id") == "admin"
    assert spans["leads.close"].attributes.get("correlation_id") == "corr-admin"
    assert spans["leads.close"].attributes.get("lead_id") == lead.id


def test_invalid_transition_emits_no_audit_or_event(db_session: Session, audit_sink: InMemoryAuditSink) -> None:
    closed: list[str] = []
    lead_family: list[str] = []

    def on_closed(event: DomainEvent) -> None:
        closed.append(event.envelope["payload"]["lead_id"])

    def on_lead(event: DomainEvent) -> None:
        lead_family.append(event.name)

    event_bus.subscribe("leadscope.lead.closed", on_closed)
    event_bus.subscribe("leadscope.lead.*", on_lead)
    try:
        service = LeadService()
        lead = service.create_lead(db_session, ADMIN, LeadCreate(payload={"name": "Acme"}))
        service.close_lead(db_session, ADMIN, lead.id, LeadClose(status="Won"))
        audit_count = len(audit_sink.entries)

        with pytest.raises(InvalidTransitionError):
            service.close_lead(db_session, ADMIN, lead.id, LeadClose(status="Won"))
    finally:
        event_bus.unsubscribe("leadscope.lead.closed", on_closed)
        event_bus.unsubscribe("leadscope.lead.*", on_lead)

    assert len(audit_sink.entries) == audit_count
    assert closed == [lead.id]
    assert lead_family == ["leadscope.lead.created", "leadscope.lead.closed"]
    assert audit_sink.entries[-1]["correlation_id"] == "corr-admin"
    assert events.published_events[-1]["payload"]["is_closed"] is True


def test_metrics_payload_exposes_engine_counters(db_session: Session) -> None:
    LeadService().list_leads(db_session, ADMIN)

    payload = generate_metrics_payload().decode("utf-8")

    assert "visibility_filters_resolved_total" in payload
    assert 'collection="leads"' in payload


def test_otel_setup_is_opt_in(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("OTEL_ENABLED", "false")
    get_settings.cache_clear()
    try:
        settings = get_settings()
        assert settings.otel_enabled is False
        assert setup_otel(settings.app_name, settings.otel_enabled) is None
    finally:
        get_settings.cache_clear()


def test_correlation_scope_mints_and_restores() -> None:
    assert get_correlation_id() is None

    with correlation_scope() as minted:
        assert get_correlation_id() == minted
        with correlation_scope() as nested:
            assert nested == minted
        with correlation_scope("job-7") as explicit:
            assert explicit == "job-7"
        assert get_correlation_id() == minted

    assert get_correlation_id() is None
