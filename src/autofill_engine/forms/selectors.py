"""Stable CSS selector generation for elements of a parsed page."""

import re
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from bs4 import BeautifulSoup, Tag
from soupsieve import SelectorSyntaxError

DATA_ATTRIBUTES = ("data-testid", "data-test", "data-cy", "data-name", "data-field")

# Framework-generated class prefixes that change between builds
UNSTABLE_CLASS_PREFIXES = ("ng-", "v-", "react-", "vue-", "css-", "sc-", "emotion-", "Mui", "ant-", "jsx-")

_SAFE_IDENT = re.compile(r"^-?[_a-zA-Z][_a-zA-Z0-9-]*$")


@dataclass
class SelectorConfig:
    """Tunable selector generation options."""
    data_attributes: Tuple[str, ...] = DATA_ATTRIBUTES
    unstable_class_prefixes: Tuple[str, ...] = UNSTABLE_CLASS_PREFIXES
    max_class_length: int = 20
    max_classes: int = 3


def css_string(value: str) -> str:
    """Quote a value for use inside an attribute selector."""
    return '"' + value.replace("\\", "\\\\").replace('"', '\\"') + '"'


class SelectorGenerator:
    """
    Generates selectors for elements of one document.

    Strategies in order: id, name, data attributes, class list, and a
    positional nth-of-type path. Every strategy except the positional path
    is used only when it matches exactly one element in the document, so
    repeated analyses of an unchanged page yield the same selector.
    """

    def __init__(self, soup: BeautifulSoup, config: Optional[SelectorConfig] = None):
        self.soup = soup
        self.config = config or SelectorConfig()

    def generate(self, element: Tag) -> str:
        for candidate in self.candidates(element):
            if self._is_unique(candidate):
                return candidate
        return self.positional_path(element)

    def candidates(self, element: Tag) -> List[str]:
        tag = element.name
        found = []

        element_id = element.get("id")
        if element_id:
            if _SAFE_IDENT.match(element_id):
                found.append(f"#{element_id}")
            else:
                found.append(f"[id={css_string(element_id)}]")

        name = element.get("name")
        if name:
            found.append(f"{tag}[name={css_string(name)}]")

        for attr in self.config.data_attributes:
            value = element.get(attr)
            if value:
                found.append(f"[{attr}={css_string(value)}]")

        classes = self.stable_classes(element)
        if classes:
            found.append(tag + "".join(f".{cls}" for cls in classes))

        return found

    def stable_classes(self, element: Tag) -> List[str]:
        classes = []
        for cls in element.get("class", []):
            if len(cls) > self.config.max_class_length:
                continue
            if cls.startswith(self.config.unstable_class_prefixes):
                continue
            if not _SAFE_IDENT.match(cls):
                continue
            classes.append(cls)
        return classes[: self.config.max_classes]

    def positional_path(self, element: Tag) -> str:
        parts = []
        node = element
        while isinstance(node, Tag) and node.name not in ("[document]", "html"):
            if node.name == "body":
                parts.append("body")
                break
            position = len(node.find_previous_siblings(node.name)) + 1
            parts.append(f"{node.name}:nth-of-type({position})")
            node = node.parent
        return " > ".join(reversed(parts))

    def _is_unique(self, selector: str) -> bool:
        try:
            return len(self.soup.select(selector, limit=2)) == 1
        except SelectorSyntaxError:
            return False
