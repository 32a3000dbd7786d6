"""Form templates: building them from detected forms and storing them."""

import re
from datetime import datetime
from typing import Dict, List, Optional, Protocol
from urllib.parse import urlparse

from bs4 import BeautifulSoup
from soupsieve import SelectorSyntaxError

from autofill_engine.core.models import DetectedForm, FormField, FormTemplate
from autofill_engine.utils.logging import get_logger

logger = get_logger(__name__)


class TemplateStore(Protocol):
    """Durable template lookup used by jobs."""

    def find_for_url(self, url: str) -> Optional[FormTemplate]:
        ...

    def find_best(self, url: str) -> Optional[FormTemplate]:
        ...

    def save(self, template: FormTemplate) -> FormTemplate:
        ...

    def record_outcome(self, template_id: str, success: bool) -> None:
        ...


def template_id_for(url: str, form_type: str) -> str:
    """Template id for one page: host, path and form type."""
    parsed = urlparse(url)
    host = parsed.netloc.lower() or "local"
    path = parsed.path.strip("/").lower()
    return re.sub(r"[^a-z0-9]+", "_", f"{host}_{path}_{form_type}").strip("_")


def template_matches(template: FormTemplate, html: str) -> bool:
    """Whether every required field of a template is present in a page."""
    soup = BeautifulSoup(html or "", "html.parser")
    required = [f for f in template.fields if f.required] or template.fields
    if not required:
        return False
    for form_field in required:
        try:
            if not soup.select_one(template.selector_for(form_field)):
                return False
        except SelectorSyntaxError:
            return False
    return True


def template_from_form(form: DetectedForm, url: str) -> FormTemplate:
    """Build a template from a detected form."""
    fields = [
        FormField(
            name=f.name,
            field_type=f.field_type,
            label=f.label,
            selector=f.selector,
            required=f.required,
            validation_pattern=f.validation_pattern,
            placeholder=f.placeholder,
            options=list(f.options),
        )
        for f in form.fields
    ]
    return FormTemplate(
        id=template_id_for(url, form.form_type.value),
        url=url,
        form_type=form.form_type,
        fields=fields,
        selectors={f.name: f.selector for f in fields},
        submit_selector=form.submit_selector,
        success_rate=0.0,
    )


class InMemoryTemplateStore:
    """Template store keyed by template id."""

    def __init__(self, templates: Optional[List[FormTemplate]] = None):
        self._templates: Dict[str, FormTemplate] = {}
        self.logger = logger.bind(component="template_store")
        for template in templates or []:
            self._templates[template.id] = template

    def __len__(self) -> int:
        return len(self._templates)

    def get(self, template_id: str) -> Optional[FormTemplate]:
        return self._templates.get(template_id)

    def list_templates(self) -> List[FormTemplate]:
        return list(self._templates.values())

    def find_for_url(self, url: str) -> Optional[FormTemplate]:
        """Template learned on exactly this URL, if any."""
        for template in self._templates.values():
            if template.url == url:
                return template
        return None

    def find_best(self, url: str) -> Optional[FormTemplate]:
        """
        Find the best template for a URL.

        An exact URL match wins; otherwise the domain match with the highest
        success rate is returned. A domain match describes another page, so
        jobs fall back to it only when live detection finds no form.
        """
        exact = self.find_for_url(url)
        if exact is not None:
            return exact

        domain = urlparse(url).netloc.lower()
        candidates = [t for t in self._templates.values() if t.domain == domain]
        if not candidates:
            return None
        candidates.sort(key=lambda t: (-t.success_rate, t.id))
        return candidates[0]

    def save(self, template: FormTemplate) -> FormTemplate:
        """Store a template, bumping the version when it replaces one."""
        existing = self._templates.get(template.id)
        if existing is not None:
            template = template.model_copy(update={
                "version": existing.version + 1,
                "success_rate": existing.success_rate,
                "use_count": existing.use_count,
                "updated_at": datetime.now(),
            })
        self._templates[template.id] = template
        self.logger.info("Template saved", template_id=template.id, version=template.version)
        return template

    def record_outcome(self, template_id: str, success: bool) -> None:
        """Fold one job outcome into a template's running success rate."""
        template = self._templates.get(template_id)
        if template is None:
            return
        uses = template.use_count + 1
        successes = template.success_rate / 100 * template.use_count + (1 if success else 0)
        self._templates[template_id] = template.model_copy(update={
            "use_count": uses,
            "success_rate": round(successes / uses * 100, 2),
            "updated_at": datetime.now(),
        })
