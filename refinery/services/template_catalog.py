"""
Station / check template catalog.

Read access for the batch core (template lookup and step-role
classification) plus the default catalog used by ``flask seed-templates``.
Template CRUD beyond registration lives with the catalog owner.
"""

import logging

from sqlalchemy import select

from refinery.core.exceptions import ConflictError, NotFoundError, ValidationError
from refinery.models import db
from refinery.models.template import CHECK_TYPES, TOLERANCE_UNITS, CheckTemplate, StationTemplate

logger = logging.getLogger(__name__)


# ── Step roles ───────────────────────────────────────────────────────────────
# Analytics keys off what a step *is*, derived from the template name and
# check type. One template may play several roles.

ROLE_RECEIVING = "receiving"
ROLE_RECEIVED_MASS = "received_mass"
ROLE_EXPECTED_MASS = "expected_mass"
ROLE_ASSAY = "assay"
ROLE_FIRST_OUTPUT = "first_output"
ROLE_RECOVERY = "recovery"

_NAME_ROLES = (
    (ROLE_RECEIVING, ("melting", "receiving")),
    (ROLE_ASSAY, ("assay", "purity")),
    (ROLE_FIRST_OUTPUT, ("export", "first pour", "casting")),
    (ROLE_RECOVERY, ("recovery",)),
)

_MASS_CHECK_ROLES = (
    (ROLE_RECEIVED_MASS, ("receiving", "initial")),
    (ROLE_EXPECTED_MASS, ("expected", "pre-cast", "target")),
)


def step_roles(template) -> frozenset:
    """Return the analytics roles played by ``template`` (may be empty)."""
    if template is None:
        return frozenset()
    name = (template.name or "").lower()
    roles = {role for role, words in _NAME_ROLES if any(w in name for w in words)}
    if getattr(template, "check_type", None) == "mass_check":
        roles.update(role for role, words in _MASS_CHECK_ROLES if any(w in name for w in words))
    return frozenset(roles)


# ── Lookup ───────────────────────────────────────────────────────────────────


def get_template(template_id):
    """Return the station or check template with ``template_id``, or None."""
    if not template_id:
        return None
    # Called mid-mutation by the batch core; pending batch changes must not
    # flush before the service commits them.
    with db.session.no_autoflush:
        station = db.session.execute(
            select(StationTemplate).where(StationTemplate.template_id == template_id)
        ).scalar_one_or_none()
        if station is not None:
            return station
        return db.session.execute(
            select(CheckTemplate).where(CheckTemplate.template_id == template_id)
        ).scalar_one_or_none()


def require_template(template_id):
    template = get_template(template_id)
    if template is None:
        raise NotFoundError(resource="Template", resource_id=template_id)
    return template


def list_templates(kind=None):
    """All templates, stations first, optionally filtered to ``station``/``check``."""
    items = []
    if kind in (None, "station"):
        items.extend(db.session.execute(
            select(StationTemplate).order_by(StationTemplate.template_id)
        ).scalars().all())
    if kind in (None, "check"):
        items.extend(db.session.execute(
            select(CheckTemplate).order_by(CheckTemplate.template_id)
        ).scalars().all())
    return items


# ── Registration ─────────────────────────────────────────────────────────────


def _ensure_unique(template_id):
    if get_template(template_id) is not None:
        raise ConflictError("Template", "template_id", template_id)


def register_station_template(template_id, name, *, description="",
                              estimated_duration_min=None, sop_steps=None,
                              commit=True):
    if not template_id or not name:
        raise ValidationError("template_id and name are required")
    _ensure_unique(template_id)
    template = StationTemplate(
        template_id=template_id,
        name=name,
        description=description,
        estimated_duration_min=estimated_duration_min,
        sop_steps=list(sop_steps or []),
    )
    db.session.add(template)
    if commit:
        db.session.commit()
    return template


def register_check_template(template_id, name, check_type, *, description="",
                            tolerance=None, tolerance_unit=None, commit=True):
    if not template_id or not name:
        raise ValidationError("template_id and name are required")
    if check_type not in CHECK_TYPES:
        raise ValidationError(
            f"Invalid check_type '{check_type}'",
            details={"allowed": sorted(CHECK_TYPES)},
        )
    if tolerance_unit is not None and tolerance_unit not in TOLERANCE_UNITS:
        raise ValidationError(
            f"Invalid tolerance_unit '{tolerance_unit}'",
            details={"allowed": sorted(TOLERANCE_UNITS)},
        )
    _ensure_unique(template_id)
    template = CheckTemplate(
        template_id=template_id,
        name=name,
        check_type=check_type,
        description=description,
        tolerance=tolerance,
        tolerance_unit=tolerance_unit or ("g" if tolerance is not None else None),
    )
    db.session.add(template)
    if commit:
        db.session.commit()
    return template


# ── Default catalog ──────────────────────────────────────────────────────────

DEFAULT_STATION_TEMPLATES = [
    {
        "template_id": "station_receiving",
        "name": "Receiving",
        "description": "Initial receiving and documentation of raw materials",
        "estimated_duration_min": 15,
        "sop_steps": [
            "Verify delivery documentation matches physical material",
            "Inspect material for damage or contamination",
            "Apply batch identification labels",
        ],
    },
    {
        "template_id": "station_melting",
        "name": "Melting",
        "description": "Melt raw material in furnace",
        "estimated_duration_min": 45,
        "sop_steps": [
            "Verify furnace calibration is current",
            "Load material into crucible",
            "Visual check for complete melting",
        ],
    },
    {
        "template_id": "station_refining",
        "name": "Refining",
        "description": "Chemical refining process to purify metal",
        "estimated_duration_min": 120,
        "sop_steps": [
            "Ensure all PPE is worn",
            "Monitor reaction progress and temperature",
            "Neutralize and dispose of waste per protocol",
        ],
    },
    {
        "template_id": "station_assay",
        "name": "Assay",
        "description": "Test material purity and composition",
        "estimated_duration_min": 30,
        "sop_steps": [
            "Calibrate XRF analyzer with reference standards",
            "Run XRF analysis (minimum 3 readings)",
            "Record results in batch log",
        ],
    },
    {
        "template_id": "station_casting",
        "name": "Casting",
        "description": "Cast refined metal into bars or forms",
        "estimated_duration_min": 60,
        "sop_steps": [
            "Preheat molds to specified temperature",
            "Pour molten metal smoothly into molds",
            "Stamp batch number and purity on bars",
        ],
    },
    {
        "template_id": "station_recovery",
        "name": "Recovery Pour",
        "description": "Recover residual metal from slag and crucibles",
        "estimated_duration_min": 90,
        "sop_steps": ["Collect residues", "Re-melt and pour", "Weigh recovered metal"],
    },
    {
        "template_id": "station_packaging",
        "name": "Packaging",
        "description": "Final packaging and documentation",
        "estimated_duration_min": 20,
        "sop_steps": [
            "Verify final weight matches expected value",
            "Generate certificate of analysis",
            "Seal package and apply security labels",
        ],
    },
]

DEFAULT_CHECK_TEMPLATES = [
    {
        "template_id": "check_weigh_in",
        "name": "Initial Weight Check",
        "check_type": "mass_check",
        "description": "Weigh received material on a calibrated scale",
        "tolerance": 0.5,
        "tolerance_unit": "g",
    },
    {
        "template_id": "check_expected_output",
        "name": "Pre-Cast Expected Weight",
        "check_type": "mass_check",
        "description": "Weigh refined material before casting",
        "tolerance": 0.5,
        "tolerance_unit": "%",
    },
    {
        "template_id": "check_weigh_out",
        "name": "Final Weight Check",
        "check_type": "mass_check",
        "description": "Weigh finished material and verify against expected mass",
        "tolerance": 0.5,
        "tolerance_unit": "g",
    },
    {
        "template_id": "check_visual_inspection",
        "name": "Visual Inspection",
        "check_type": "photo",
        "description": "Photograph material and document defects",
    },
    {
        "template_id": "check_supervisor_approval",
        "name": "Supervisor Approval",
        "check_type": "signature",
        "description": "Supervisor sign-off before proceeding",
    },
    {
        "template_id": "check_safety_checklist",
        "name": "Safety Checklist",
        "check_type": "checklist",
        "description": "Complete safety checklist before starting work",
    },
    {
        "template_id": "check_purity_test",
        "name": "Purity Test",
        "check_type": "instruction",
        "description": "Perform XRF analysis and record purity percentage",
    },
]


def seed_default_templates():
    """Insert the default catalog. Existing template ids are left untouched.

    Returns the number of templates inserted.
    """
    created = 0
    for entry in DEFAULT_STATION_TEMPLATES:
        if get_template(entry["template_id"]) is None:
            register_station_template(commit=False, **entry)
            created += 1
    for entry in DEFAULT_CHECK_TEMPLATES:
        if get_template(entry["template_id"]) is None:
            register_check_template(commit=False, **entry)
            created += 1
    db.session.commit()
    logger.info("Seeded %d default templates", created)
    return created
