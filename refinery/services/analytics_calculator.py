"""
Batch analytics derivation.

Two entry points, both called by ``batch_service``:

    update_on_step_completion(batch, node_id, template_id, step_data, now)
        Per-step capture of milestones and measured values, keyed by the
        role of the completed node's template (see template_catalog).
    finalize(batch)
        Terminal recomputation when the batch completes.

Derived fields are always recomputed from captured inputs, never
accumulated, so repeating a step update with the same data is a no-op:

    fine_grams_received      = received_weight_g × fine_content_percent / 100
    actual_output_g          = Σ recovery pours            (when pours exist)
    expected_output_g        = fine_grams_received          (when not captured)
    loss_gain_g              = actual_output_g − expected_output_g
    loss_gain_percent        = loss_gain_g / fine_grams_received × 100
    overall_recovery_percent = actual_output_g / fine_grams_received × 100
    ftt_hours                = business hours, received → first export

Any failure is raised as AnalyticsError; callers log and continue.
"""

import logging
from datetime import datetime, timedelta, timezone

from refinery.core.exceptions import AnalyticsError
from refinery.models.batch import RecoveryPour
from refinery.services import template_catalog
from refinery.services.template_catalog import (
    ROLE_ASSAY,
    ROLE_EXPECTED_MASS,
    ROLE_FIRST_OUTPUT,
    ROLE_RECEIVED_MASS,
    ROLE_RECEIVING,
    ROLE_RECOVERY,
)
from refinery.utils.helpers import as_utc

logger = logging.getLogger(__name__)

_MASS_KEYS = ("measured_mass", "mass", "weight")
_FINE_KEYS = ("fine_content_percent", "fine_percent", "purity")
_OUTPUT_KEYS = ("output_weight", "pour_weight", "weight")
_RECEIVING_META = ("supplier", "drill_number", "destination")


def _utcnow():
    return datetime.now(timezone.utc)


def _first_number(data, keys):
    """First positive numeric value among ``keys`` in ``data``."""
    for key in keys:
        value = data.get(key)
        if value is None or isinstance(value, bool) or value == "":
            continue
        try:
            number = float(value)
        except (TypeError, ValueError) as exc:
            raise AnalyticsError(f"{key}={value!r} is not a number") from exc
        if number > 0:
            return number
    return None


# ── Business hours ───────────────────────────────────────────────────────────


def business_hours_between(start, end):
    """Count whole hours from ``start`` to ``end`` that fall on Mon–Fri.

    Steps one hour at a time from ``start`` while before ``end``; each step
    whose weekday is not Saturday/Sunday counts as one hour. Evaluated in
    UTC. Returns 0 when ``end`` is not after ``start``.
    """
    start, end = as_utc(start), as_utc(end)
    if start is None or end is None:
        return 0
    hours = 0
    current = start
    step = timedelta(hours=1)
    while current < end:
        if current.weekday() < 5:
            hours += 1
        current += step
    return hours


# ── Derivations ──────────────────────────────────────────────────────────────


def recompute_derived(batch):
    """Recompute every derived numeric field from the captured inputs."""
    if batch.received_weight_g and batch.fine_content_percent:
        batch.fine_grams_received = batch.received_weight_g * batch.fine_content_percent / 100

    pours = list(batch.recovery_pours)
    if pours:
        batch.total_recovery_g = sum(p.weight_g for p in pours)
        batch.actual_output_g = batch.total_recovery_g

    fine = batch.fine_grams_received
    actual = batch.actual_output_g

    if actual is not None and fine:
        batch.overall_recovery_percent = actual / fine * 100

    expected = batch.expected_output_g if batch.expected_output_g is not None else fine
    if actual is not None and expected is not None:
        batch.loss_gain_g = actual - expected
        batch.loss_gain_percent = batch.loss_gain_g / fine * 100 if fine else 0.0

    if batch.melting_received_at and batch.first_export_at:
        batch.ftt_hours = float(
            business_hours_between(batch.melting_received_at, batch.first_export_at)
        )
    return batch


def ftt_recovery_percent(batch):
    """First-time recovery as a percentage of fine grams received, or None."""
    if not batch.first_time_recovery_g or not batch.fine_grams_received:
        return None
    return batch.first_time_recovery_g / batch.fine_grams_received * 100


def _upsert_pour(batch, node_id, weight, now):
    for pour in batch.recovery_pours:
        if pour.node_id == node_id:
            pour.weight_g = weight
            return pour
    pour = RecoveryPour(
        node_id=node_id,
        pour_number=len(batch.recovery_pours) + 1,
        weight_g=weight,
        timestamp=now,
    )
    batch.recovery_pours.append(pour)
    return pour


def update_on_step_completion(batch, node_id, template_id, step_data=None, now=None):
    """Capture values from a completed step, then recompute derived fields.

    Captured inputs are first-write-wins, so a repeated completion of the
    same step with the same data leaves the batch unchanged.
    """
    now = now or _utcnow()
    data = step_data if isinstance(step_data, dict) else {}
    try:
        template = template_catalog.get_template(template_id)
        roles = template_catalog.step_roles(template)

        if ROLE_RECEIVING in roles and batch.melting_received_at is None:
            batch.melting_received_at = now
            for key in _RECEIVING_META:
                if data.get(key):
                    setattr(batch, key, data[key])

        mass = _first_number(data, _MASS_KEYS)
        fine_pct = _first_number(data, _FINE_KEYS)

        if ROLE_RECEIVED_MASS in roles:
            if mass and not batch.received_weight_g:
                batch.received_weight_g = mass
            if fine_pct and not batch.fine_content_percent:
                batch.fine_content_percent = fine_pct

        if ROLE_ASSAY in roles and fine_pct and not batch.fine_content_percent:
            batch.fine_content_percent = fine_pct

        if ROLE_EXPECTED_MASS in roles and mass and not batch.expected_output_g:
            batch.expected_output_g = mass

        if ROLE_FIRST_OUTPUT in roles:
            output = _first_number(data, _OUTPUT_KEYS)
            if output and batch.first_export_at is None:
                batch.first_export_at = now
                batch.output_weight_g = output
                batch.first_time_recovery_g = output
                _upsert_pour(batch, node_id, output, now)

        if ROLE_RECOVERY in roles:
            pour_weight = _first_number(data, ("pour_weight",))
            if pour_weight:
                _upsert_pour(batch, node_id, pour_weight, now)

        explicit_actual = _first_number(data, ("actual_output_g",))
        if explicit_actual and not batch.recovery_pours:
            batch.actual_output_g = explicit_actual
        explicit_expected = _first_number(data, ("expected_output_g",))
        if explicit_expected and not batch.expected_output_g:
            batch.expected_output_g = explicit_expected

        recompute_derived(batch)
    except AnalyticsError:
        raise
    except Exception as exc:
        raise AnalyticsError(
            f"Step analytics failed for batch {batch.batch_number} node {node_id}: {exc}"
        ) from exc
    return batch


def finalize(batch):
    """Terminal recomputation at completion."""
    try:
        recompute_derived(batch)
    except Exception as exc:
        raise AnalyticsError(f"Finalize failed for batch {batch.batch_number}: {exc}") from exc
    logger.info(
        "Analytics finalized for %s: fine=%s actual=%s loss_gain=%s recovery=%s ftt=%s",
        batch.batch_number, batch.fine_grams_received, batch.actual_output_g,
        batch.loss_gain_g, batch.overall_recovery_percent, batch.ftt_hours,
    )
    return batch
