"""Profile-to-field mapping with pattern dictionaries and special cases."""

import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Sequence, Tuple

from autofill_engine.core.models import FieldMapping, FormField, MappingResult, Profile
from autofill_engine.utils.logging import get_logger

logger = get_logger(__name__)

EMAIL_FORMAT = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
PHONE_FORMAT = re.compile(r"^[\d\s\-\(\)\+]+$")


@dataclass(frozen=True)
class FieldCategory:
    """A semantic category: where its value lives and what fields it matches."""
    name: str
    profile_path: str
    patterns: Tuple[str, ...]
    implied_types: Tuple[str, ...] = ()

    def value(self, profile: Profile) -> str:
        target = profile
        for attr in self.profile_path.split("."):
            target = getattr(target, attr)
        return (target or "").strip()


DEFAULT_CATEGORIES: Tuple[FieldCategory, ...] = (
    FieldCategory(
        "first_name", "first_name",
        (r"first.*name", r"fname", r"given.*name", r"forename", r"prenom", r"nombre"),
    ),
    FieldCategory(
        "last_name", "last_name",
        (r"last.*name", r"lname", r"surname", r"family.*name", r"apellido", r"(?<![a-z])nom(?![a-z])"),
    ),
    FieldCategory(
        "email", "email",
        (r"email", r"e.mail", r"mail", r"correo", r"courriel"),
        implied_types=("email",),
    ),
    FieldCategory(
        "phone", "phone",
        (r"phone", r"(?<![a-z])tel", r"mobile", r"(?<![a-z])cell", r"telefono", r"telephone", r"numero"),
        implied_types=("tel", "phone"),
    ),
    FieldCategory(
        "street2", "address.street2",
        (r"address.*2", r"line.?2", r"street.*2", r"(?<![a-z])apt", r"apartment", r"suite"),
    ),
    FieldCategory(
        "street", "address.street1",
        (r"address", r"street", r"addr", r"direccion", r"adresse", r"(?<![a-z])rue(?![a-z])"),
    ),
    FieldCategory(
        "city", "address.city",
        (r"city", r"town", r"ciudad", r"ville", r"locality"),
    ),
    FieldCategory(
        "state", "address.state",
        (r"state(?!ment)", r"province", r"region", r"estado", r"provincia", r"departement"),
    ),
    FieldCategory(
        "postal", "address.postal_code",
        (r"zip", r"postal", r"postcode", r"codigo.*postal", r"code.*postal"),
    ),
    FieldCategory(
        "country", "address.country",
        (r"country", r"nation", r"pais", r"pays", r"nationality"),
    ),
)


@dataclass
class MapperConfig:
    """Tunable categories and per-source confidence weights."""
    categories: Tuple[FieldCategory, ...] = DEFAULT_CATEGORIES
    full_name_patterns: Tuple[str, ...] = (r"full.?name", r"your.?name", r"^name$")
    date_of_birth_patterns: Tuple[str, ...] = (r"birth", r"(?<![a-z])dob(?![a-z])", r"birthday")
    confidence: Dict[str, float] = field(default_factory=lambda: {
        "type": 90.0,
        "name": 85.0,
        "label": 70.0,
        "date_of_birth": 75.0,
        "full_name": 60.0,
        "custom": 50.0,
    })


class FieldMapper:
    """
    Maps profile values onto form fields.

    Categories are tried in priority order and the first category whose
    patterns (or implied input types) match a field claims it. A claimed
    field whose profile value is empty stays unmapped; values are never
    bound as empty strings. Unclaimed fields fall through to the full-name,
    date-of-birth and custom-field special cases.
    """

    def __init__(self, config: Optional[MapperConfig] = None):
        self.config = config or MapperConfig()
        self.logger = logger.bind(component="field_mapper")
        self._patterns = {
            category.name: [re.compile(p, re.IGNORECASE) for p in category.patterns]
            for category in self.config.categories
        }
        self._full_name = [re.compile(p, re.IGNORECASE) for p in self.config.full_name_patterns]
        self._date_of_birth = [re.compile(p, re.IGNORECASE) for p in self.config.date_of_birth_patterns]

    def map(self, profile: Profile, fields: Sequence[FormField]) -> Tuple[Dict[str, str], List[str]]:
        """
        Map a profile onto fields.

        Args:
            profile: Profile to read values from
            fields: Fields in form order

        Returns:
            Tuple of (field name to value mapping, unmapped field names in field order)
        """
        result = self.resolve(profile, fields)
        return result.mapping, result.unmapped

    def resolve(self, profile: Profile, fields: Sequence[FormField]) -> MappingResult:
        """Map a profile onto fields, keeping per-binding provenance."""
        mapping: Dict[str, str] = {}
        unmapped: List[str] = []
        bindings: List[FieldMapping] = []

        for form_field in fields:
            binding = self.bind(profile, form_field)
            if binding is None:
                unmapped.append(form_field.name)
                continue
            mapping[form_field.name] = binding.value
            bindings.append(binding)

        confidence = sum(b.confidence for b in bindings) / len(fields) if fields else 0.0
        return MappingResult(
            mapping=mapping,
            unmapped=unmapped,
            bindings=bindings,
            confidence=round(confidence, 2),
        )

    def bind(self, profile: Profile, form_field: FormField) -> Optional[FieldMapping]:
        """Resolve one field to a binding, or None when it stays unmapped."""
        claim = self.match_category(form_field)
        if claim is not None:
            category, source = claim
            value = _match_option(form_field, category.value(profile))
            if not value:
                return None
            return FieldMapping(
                field_name=form_field.name,
                value=value,
                category=category.name,
                source=source,
                confidence=self.config.confidence[source],
            )
        return self._special_case(profile, form_field)

    def match_category(self, form_field: FormField) -> Optional[Tuple[FieldCategory, str]]:
        """Return the first category claiming the field and what matched."""
        field_type = (form_field.field_type or "").lower()
        for category in self.config.categories:
            if field_type in category.implied_types:
                return category, "type"
            patterns = self._patterns[category.name]
            if form_field.name and any(p.search(form_field.name) for p in patterns):
                return category, "name"
            if form_field.label and any(p.search(form_field.label) for p in patterns):
                return category, "label"
        return None

    def _special_case(self, profile: Profile, form_field: FormField) -> Optional[FieldMapping]:
        name = (form_field.name or "").lower()
        label = (form_field.label or "").lower().strip(" *:")
        weights = self.config.confidence

        def binding(value: str, category: str, source: str) -> Optional[FieldMapping]:
            if not value:
                return None
            return FieldMapping(
                field_name=form_field.name,
                value=value,
                category=category,
                source=source,
                confidence=weights[source],
            )

        if any(p.search(name) or p.search(label) for p in self._full_name):
            return binding(profile.full_name, "full_name", "full_name")

        if any(p.search(name) or p.search(label) for p in self._date_of_birth):
            return binding(format_date_of_birth(profile.date_of_birth, form_field), "date_of_birth", "date_of_birth")

        for key in sorted(profile.custom_fields):
            lowered = key.lower()
            if lowered and (lowered in name or lowered in label):
                return binding(profile.custom_fields[key].strip(), f"custom:{key}", "custom")

        return None

    def validate(self, mapping: Dict[str, str], fields: Sequence[FormField]) -> List[str]:
        """
        Check a mapping against field constraints.

        Returns:
            One warning per violation: required-but-unmapped, required-but-empty,
            and email or phone values that fail a format check
        """
        warnings = []
        for form_field in fields:
            if form_field.name not in mapping:
                if form_field.required:
                    warnings.append(f"Required field {form_field.name} is not mapped")
                continue

            value = mapping[form_field.name].strip()
            if not value:
                if form_field.required:
                    warnings.append(f"Required field {form_field.name} is empty")
                continue

            field_type = (form_field.field_type or "").lower()
            if field_type == "email" and not EMAIL_FORMAT.match(value):
                warnings.append(f"Invalid email format for field {form_field.name}: {value}")
            if field_type in ("tel", "phone") and not PHONE_FORMAT.match(value):
                warnings.append(f"Invalid phone format for field {form_field.name}: {value}")
            if form_field.validation_pattern and not _matches_pattern(form_field.validation_pattern, value):
                warnings.append(f"Value for field {form_field.name} does not match pattern {form_field.validation_pattern}")

        if warnings:
            self.logger.debug("Mapping validation warnings", count=len(warnings))
        return warnings


def format_date_of_birth(value: str, form_field: FormField) -> str:
    """Format an ISO date for a field based on its type and placeholder hints."""
    value = (value or "").strip()
    if not value:
        return ""
    try:
        parsed = datetime.strptime(value, "%Y-%m-%d")
    except ValueError:
        return value

    if (form_field.field_type or "").lower() == "date":
        return parsed.strftime("%Y-%m-%d")

    hint = f"{form_field.placeholder} {form_field.label}".lower()
    if "mm/dd/yyyy" in hint:
        return parsed.strftime("%m/%d/%Y")
    if "dd/mm/yyyy" in hint:
        return parsed.strftime("%d/%m/%Y")
    if "dd.mm.yyyy" in hint:
        return parsed.strftime("%d.%m.%Y")
    if "dd-mm-yyyy" in hint:
        return parsed.strftime("%d-%m-%Y")
    return parsed.strftime("%Y-%m-%d")


def _match_option(form_field: FormField, value: str) -> str:
    """Align a value with a select control's option values when possible."""
    if not value or form_field.field_type != "select" or not form_field.options:
        return value
    lowered = value.lower()
    for option in form_field.options:
        if option.lower() == lowered:
            return option
    return value


def _matches_pattern(pattern: str, value: str) -> bool:
    try:
        return re.fullmatch(pattern, value) is not None
    except re.error:
        return True
