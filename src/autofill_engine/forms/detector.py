"""Heuristic form structure detection over page snapshots."""

import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set, Tuple

from bs4 import BeautifulSoup, NavigableString, Tag

from autofill_engine.browser.driver import PageSnapshot
from autofill_engine.core.models import (
    DetectedField,
    DetectedForm,
    FormType,
    LabelSource,
    SubmitControl,
)
from autofill_engine.forms.selectors import SelectorConfig, SelectorGenerator
from autofill_engine.utils.logging import get_logger

logger = get_logger(__name__)

EXCLUDED_INPUT_TYPES = {"hidden", "submit", "button", "reset", "image"}
NEARBY_TEXT_MAX_LENGTH = 80
NEARBY_TEXT_TAGS = {"label", "span", "div", "p", "strong", "b", "em", "small", "legend", "td", "th", "dt", "h3", "h4", "h5", "h6"}

_WHITESPACE = re.compile(r"\s+")
_PASSWORD_CONFIRMATION = re.compile(r"confirm|repeat|verify|retype|again|password2|passwd2", re.IGNORECASE)

CAPTCHA_MARKERS: Dict[str, Tuple[str, ...]] = {
    "recaptcha": ("g-recaptcha", "google.com/recaptcha", "recaptcha/api"),
    "hcaptcha": ("h-captcha", "hcaptcha.com"),
    "turnstile": ("cf-turnstile", "challenges.cloudflare.com/turnstile"),
}


@dataclass(frozen=True)
class ClassificationRule:
    """
    One ordered form-type rule.

    A rule matches when any text keyword occurs in the form text or any field
    keyword occurs in a field name or label. ``requires_password`` gates the
    rule on a password field; ``requires_password_confirmation`` makes the
    rule match on a confirmation field alone.
    """
    form_type: FormType
    text_keywords: Tuple[str, ...] = ()
    field_keywords: Tuple[str, ...] = ()
    requires_password: bool = False
    requires_password_confirmation: bool = False

    def matches(self, text: str, field_terms: List[str], has_password: bool, has_confirmation: bool) -> bool:
        if self.requires_password and not has_password:
            return False
        if self.requires_password_confirmation:
            return has_confirmation
        if any(keyword in text for keyword in self.text_keywords):
            return True
        return any(keyword in term for term in field_terms for keyword in self.field_keywords)


DEFAULT_RULES: Tuple[ClassificationRule, ...] = (
    ClassificationRule(FormType.REGISTRATION, requires_password_confirmation=True),
    ClassificationRule(
        FormType.LOGIN,
        text_keywords=("log in", "login", "sign in", "signin"),
        requires_password=True,
    ),
    ClassificationRule(
        FormType.REGISTRATION,
        text_keywords=("register", "sign up", "signup", "create account", "create an account", "join now"),
    ),
    ClassificationRule(
        FormType.LOGIN,
        field_keywords=("username", "user", "email", "login"),
        requires_password=True,
    ),
    ClassificationRule(
        FormType.CHECKOUT,
        text_keywords=("checkout", "payment", "place order", "billing", "shipping address"),
        field_keywords=("card", "billing", "cvv", "cvc", "expiry", "shipping"),
    ),
    ClassificationRule(
        FormType.CONTACT,
        text_keywords=("contact", "get in touch", "send message", "enquiry", "inquiry"),
        field_keywords=("message", "subject", "comment", "enquiry", "inquiry"),
    ),
    ClassificationRule(
        FormType.SURVEY,
        text_keywords=("survey", "questionnaire", "feedback", "rate your", "how likely"),
        field_keywords=("rating", "satisfaction", "question", "feedback"),
    ),
    ClassificationRule(
        FormType.PROFILE,
        text_keywords=("profile", "account settings", "personal information", "personal details", "update your"),
        field_keywords=("bio", "avatar", "display_name", "displayname"),
    ),
)


@dataclass
class DetectorConfig:
    """Tunable detection weights, thresholds and classification rules."""
    per_field_score: float = 10.0
    field_score_cap: float = 50.0
    labelled_bonus: float = 20.0
    classified_bonus: float = 15.0
    submit_bonus: float = 15.0
    min_confidence: float = 0.0
    max_forms: int = 10
    include_orphan_controls: bool = True
    rules: Tuple[ClassificationRule, ...] = DEFAULT_RULES
    selector: SelectorConfig = field(default_factory=SelectorConfig)


class FormDetector:
    """
    Enumerates forms and fields on a page snapshot.

    Analysis is a pure function of the snapshot: the same HTML always yields
    the same forms, fields, selectors and scores.
    """

    def __init__(self, config: Optional[DetectorConfig] = None):
        self.config = config or DetectorConfig()
        self.logger = logger.bind(component="form_detector")

    def analyze(self, snapshot: PageSnapshot) -> List[DetectedForm]:
        """
        Analyze a page snapshot.

        Args:
            snapshot: Page state to analyze

        Returns:
            Detected forms ordered by descending confidence, ties in document order
        """
        forms = self.analyze_html(snapshot.html, title=snapshot.title)
        self.logger.debug(
            "Form analysis complete",
            url=snapshot.url,
            forms=len(forms),
            best_confidence=forms[0].confidence if forms else None,
        )
        return forms

    def analyze_html(self, html: str, title: str = "") -> List[DetectedForm]:
        soup = BeautifulSoup(html or "", "html.parser")
        selectors = SelectorGenerator(soup, self.config.selector)
        label_index = self._index_labels(soup)

        containers = self._find_containers(soup)
        forms = []
        for index, container in enumerate(containers):
            form = self._analyze_container(container, index, soup, selectors, label_index, title)
            if form is not None:
                forms.append(form)

        if self.config.include_orphan_controls:
            orphan_form = self._analyze_orphans(soup, containers, len(containers), selectors, label_index, title)
            if orphan_form is not None:
                forms.append(orphan_form)

        forms = [f for f in forms if f.confidence >= self.config.min_confidence]
        forms.sort(key=lambda f: -f.confidence)
        return forms[: self.config.max_forms]

    def best_form(self, snapshot: PageSnapshot) -> Optional[DetectedForm]:
        forms = self.analyze(snapshot)
        return forms[0] if forms else None

    # Containers

    def _find_containers(self, soup: BeautifulSoup) -> List[Tag]:
        candidates = soup.find_all(lambda tag: tag.name == "form" or tag.get("role") == "form")
        ids = {id(tag) for tag in candidates}
        return [
            tag for tag in candidates
            if not any(id(parent) in ids for parent in tag.parents)
        ]

    def _analyze_container(
        self,
        container: Tag,
        index: int,
        soup: BeautifulSoup,
        selectors: SelectorGenerator,
        label_index: Dict[str, Tag],
        title: str,
    ) -> Optional[DetectedForm]:
        controls = [tag for tag in container.find_all(_is_field_control)]
        fields = self._build_fields(controls, selectors, label_index)
        if not fields:
            return None

        submits = [self._submit_control(tag, selectors) for tag in container.find_all(_is_submit_control)]
        text = _normalize(container.get_text(" "))
        return self._build_form(
            index=index,
            selector=selectors.generate(container),
            fields=fields,
            submits=submits,
            text=text,
            title=title,
            action=container.get("action", ""),
            method=(container.get("method") or "get").lower(),
        )

    def _analyze_orphans(
        self,
        soup: BeautifulSoup,
        containers: List[Tag],
        index: int,
        selectors: SelectorGenerator,
        label_index: Dict[str, Tag],
        title: str,
    ) -> Optional[DetectedForm]:
        container_ids = {id(tag) for tag in containers}

        def outside_containers(tag: Tag) -> bool:
            return not any(id(parent) in container_ids for parent in tag.parents)

        controls = [tag for tag in soup.find_all(_is_field_control) if outside_containers(tag)]
        fields = self._build_fields(controls, selectors, label_index)
        if not fields:
            return None

        submits = [
            self._submit_control(tag, selectors)
            for tag in soup.find_all(_is_submit_control)
            if outside_containers(tag)
        ]
        text = " ".join(_normalize(c.parent.get_text(" ")) for c in controls if c.parent is not None)
        return self._build_form(
            index=index,
            selector="body",
            fields=fields,
            submits=submits,
            text=text,
            title=title,
            action="",
            method="get",
        )

    def _build_form(
        self,
        index: int,
        selector: str,
        fields: List[DetectedField],
        submits: List[SubmitControl],
        text: str,
        title: str,
        action: str,
        method: str,
    ) -> DetectedForm:
        submit_text = " ".join(s.text.lower() for s in submits)
        form_type = self.classify(fields, f"{text} {submit_text}")
        if form_type is FormType.UNKNOWN and title:
            form_type = self.classify(fields, _normalize(title))

        form = DetectedForm(
            index=index,
            selector=selector,
            fields=fields,
            submit_controls=submits,
            form_type=form_type,
            action=action or "",
            method=method,
        )
        form.confidence = self.score(form)
        return form

    # Fields

    def _build_fields(
        self,
        controls: List[Tag],
        selectors: SelectorGenerator,
        label_index: Dict[str, Tag],
    ) -> List[DetectedField]:
        fields: List[DetectedField] = []
        grouped: Dict[str, DetectedField] = {}
        seen_names: Set[str] = set()

        for control in controls:
            field_type = _field_type(control)
            name_attr = control.get("name", "")

            # Radio and checkbox groups share one name; keep the first control
            if field_type in ("radio", "checkbox") and name_attr in grouped:
                value = control.get("value")
                if value:
                    grouped[name_attr].options.append(value)
                continue

            label, source = self._find_label(control, label_index)
            if not name_attr and not label:
                continue

            key = name_attr or control.get("id") or _slug(label)
            if key in seen_names:
                key = f"{key}_{len(fields)}"
            seen_names.add(key)

            detected = DetectedField(
                name=key,
                field_type=field_type,
                label=label,
                selector=selectors.generate(control),
                required=_is_required(control, label),
                validation_pattern=control.get("pattern"),
                placeholder=control.get("placeholder", ""),
                options=_options(control),
                label_source=source,
                has_name=bool(name_attr),
            )
            if field_type in ("radio", "checkbox") and name_attr:
                grouped[name_attr] = detected
            fields.append(detected)

        return fields

    def _index_labels(self, soup: BeautifulSoup) -> Dict[str, Tag]:
        index: Dict[str, Tag] = {}
        for label in soup.find_all("label"):
            target = label.get("for")
            if target and target not in index:
                index[target] = label
        return index

    def _find_label(self, control: Tag, label_index: Dict[str, Tag]) -> Tuple[str, LabelSource]:
        control_id = control.get("id")
        if control_id and control_id in label_index:
            text = _text_excluding(label_index[control_id], control)
            if text:
                return text, LabelSource.LABEL_FOR

        parent_label = control.find_parent("label")
        if parent_label is not None:
            text = _text_excluding(parent_label, control)
            if text:
                return text, LabelSource.PARENT_LABEL

        text = _nearby_text(control)
        if text:
            return text, LabelSource.NEARBY_TEXT

        placeholder = _normalize(control.get("placeholder", ""))
        if placeholder:
            return placeholder, LabelSource.PLACEHOLDER

        aria = _normalize(control.get("aria-label", ""))
        if aria:
            return aria, LabelSource.ARIA

        return "", LabelSource.NONE

    def _submit_control(self, tag: Tag, selectors: SelectorGenerator) -> SubmitControl:
        text = _normalize(tag.get_text(" ")) or _normalize(tag.get("value", ""))
        control_type = f"{tag.name}[type={tag.get('type', 'submit')}]"
        return SubmitControl(text=text, selector=selectors.generate(tag), control_type=control_type)

    # Classification and scoring

    def classify(self, fields: List[DetectedField], text: str) -> FormType:
        """Apply the ordered classification rules to a form's fields and text."""
        field_terms = [f"{f.name} {f.label}".lower() for f in fields]
        passwords = [f for f in fields if f.field_type == "password"]
        has_confirmation = len(passwords) > 1 or any(
            _PASSWORD_CONFIRMATION.search(f"{f.name} {f.label}") for f in passwords
        )

        for rule in self.config.rules:
            if rule.matches(text.lower(), field_terms, bool(passwords), has_confirmation):
                return rule.form_type
        return FormType.UNKNOWN

    def score(self, form: DetectedForm) -> float:
        """Confidence in [0, 100] for a detected form."""
        config = self.config
        count = len(form.fields)
        if count == 0:
            return 0.0

        score = min(count * config.per_field_score, config.field_score_cap)
        labelled = sum(1 for f in form.fields if f.has_name and f.label)
        score += config.labelled_bonus * labelled / count
        if form.form_type is not FormType.UNKNOWN:
            score += config.classified_bonus
        if form.submit_controls:
            score += config.submit_bonus
        return round(max(0.0, min(score, 100.0)), 2)


def detect_captcha(snapshot: PageSnapshot) -> Optional[str]:
    """Return the CAPTCHA provider present on the page, if any."""
    html = (snapshot.html or "").lower()
    for provider, markers in CAPTCHA_MARKERS.items():
        if any(marker in html for marker in markers):
            return provider
    return None


def _is_field_control(tag: Tag) -> bool:
    if tag.name in ("select", "textarea"):
        return True
    if tag.name != "input":
        return False
    return (tag.get("type") or "text").lower() not in EXCLUDED_INPUT_TYPES


def _is_submit_control(tag: Tag) -> bool:
    control_type = (tag.get("type") or "").lower()
    if tag.name == "input":
        return control_type in ("submit", "image")
    if tag.name == "button":
        return control_type in ("", "submit")
    return False


def _field_type(control: Tag) -> str:
    if control.name in ("select", "textarea"):
        return control.name
    return (control.get("type") or "text").lower()


def _options(control: Tag) -> List[str]:
    if control.name == "select":
        return [option.get("value", _normalize(option.get_text())) for option in control.find_all("option")]
    if control.get("value") and _field_type(control) in ("radio", "checkbox"):
        return [control["value"]]
    return []


def _is_required(control: Tag, label: str) -> bool:
    if control.has_attr("required"):
        return True
    if (control.get("aria-required") or "").lower() == "true":
        return True
    return "*" in label


def _text_excluding(container: Tag, control: Tag) -> str:
    parts = []
    for text in container.find_all(string=True):
        if any(parent is control for parent in text.parents):
            continue
        parts.append(str(text))
    return _normalize(" ".join(parts))


def _nearby_text(control: Tag) -> str:
    for sibling in control.previous_siblings:
        if isinstance(sibling, NavigableString):
            text = _normalize(str(sibling))
            if text:
                return text if len(text) <= NEARBY_TEXT_MAX_LENGTH else ""
            continue
        if isinstance(sibling, Tag):
            if sibling.name in NEARBY_TEXT_TAGS:
                text = _normalize(sibling.get_text(" "))
                if text and len(text) <= NEARBY_TEXT_MAX_LENGTH:
                    return text
            return ""

    # Table layouts put the caption in the preceding cell
    parent = control.parent
    if isinstance(parent, Tag) and parent.name == "td":
        cell = parent.find_previous_sibling(["td", "th"])
        if cell is not None:
            text = _normalize(cell.get_text(" "))
            if text and len(text) <= NEARBY_TEXT_MAX_LENGTH:
                return text
    return ""


def _normalize(text: str) -> str:
    return _WHITESPACE.sub(" ", text or "").strip()


def _slug(text: str) -> str:
    return re.sub(r"[^a-z0-9]+", "_", text.lower()).strip("_")
