from __future__ import annotations

from prometheus_client import Counter, generate_latest


visibility_filters_resolved_total = Counter(
    "visibility_filters_resolved_total",
    "Visibility predicates resolved by collection, role and scoping mode",
    ["collection", "role", "mode"],
)

branch_validation_failures_total = Counter(
    "branch_validation_failures_total",
    "Rejected subordinate branch sets by reason",
    ["reason"],
)

lead_grant_recomputes_total = Counter(
    "lead_grant_recomputes_total",
    "Lead grant sets recomputed by lifecycle transition",
    ["transition"],
)

lead_invalid_transitions_total = Counter(
    "lead_invalid_transitions_total",
    "Rejected lead lifecycle transitions",
    ["transition"],
)

lead_duplicate_rejections_total = Counter(
    "lead_duplicate_rejections_total",
    "Lead writes rejected as duplicates by field",
    ["field"],
)

grant_denials_total = Counter(
    "grant_denials_total",
    "Operations denied because the record grant set lacks a capability",
    ["collection", "capability"],
)

branch_cascade_runs_total = Counter(
    "branch_cascade_runs_total",
    "Branch cascade runs by resulting status",
    ["status"],
)

branch_cascade_items_applied_total = Counter(
    "branch_cascade_items_applied_total",
    "Subordinate branch updates applied by the cascade",
)


def observe_visibility_filter(collection: str, role: str, mode: str) -> None:
    visibility_filters_resolved_total.labels(collection=collection, role=role, mode=mode).inc()


def observe_branch_validation_failure(reason: str) -> None:
    branch_validation_failures_total.labels(reason=reason).inc()


def observe_grant_recompute(transition: str) -> None:
    lead_grant_recomputes_total.labels(transition=transition).inc()


def observe_invalid_transition(transition: str) -> None:
    lead_invalid_transitions_total.labels(transition=transition).inc()


def observe_duplicate_rejection(field: str) -> None:
    lead_duplicate_rejections_total.labels(field=field).inc()


def observe_grant_denial(collection: str, capability: str) -> None:
    grant_denials_total.labels(collection=collection, capability=capability).inc()


def observe_cascade_run(status: str) -> None:
    branch_cascade_runs_total.labels(status=status).inc()


def observe_cascade_items_applied(count: int = 1) -> None:
    if count > 0:
        branch_cascade_items_applied_total.inc(count)


def generate_metrics_payload() -> bytes:
    return generate_latest()
