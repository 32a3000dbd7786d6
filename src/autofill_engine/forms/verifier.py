"""Submission outcome verification from before/after page snapshots."""

import re
from dataclasses import dataclass
from typing import List, Optional, Tuple

from bs4 import BeautifulSoup

from autofill_engine.browser.driver import PageSnapshot
from autofill_engine.core.models import SubmissionResult
from autofill_engine.utils.logging import get_logger

logger = get_logger(__name__)

SUCCESS_SELECTORS = (
    ".success", ".alert-success", ".message-success",
    "[class*='success']", "[id*='success']",
    ".confirmation", ".thank-you", ".complete",
)

ERROR_SELECTORS = (
    ".error", ".alert-error", ".message-error", ".alert-danger",
    "[class*='error']", "[id*='error']",
    ".warning", ".alert-warning", ".invalid", "[aria-invalid='true']",
)

SUCCESS_PHRASES = (
    "thank you", "thanks for", "successfully", "has been received",
    "we will be in touch", "registration complete", "submission received",
)

ERROR_PHRASES = (
    "is required", "please enter", "please correct", "invalid", "try again",
    "already exists", "already registered",
)


@dataclass
class VerifierConfig:
    """Tunable verification heuristics."""
    success_selectors: Tuple[str, ...] = SUCCESS_SELECTORS
    error_selectors: Tuple[str, ...] = ERROR_SELECTORS
    success_phrases: Tuple[str, ...] = SUCCESS_PHRASES
    error_phrases: Tuple[str, ...] = ERROR_PHRASES
    title_success_keywords: Tuple[str, ...] = ("success", "thank", "complete", "confirmed")
    title_error_keywords: Tuple[str, ...] = ("error", "failed")
    max_indicator_length: int = 200


class SubmissionVerifier:
    """
    Classifies a submission from page state before and after it.

    Signals in order: navigation, success indicators, error indicators,
    title keywords. Any error indicator means failure; otherwise at least one
    positive signal is needed for success. Indicators that were already on
    the page before submitting are ignored.
    """

    def __init__(self, config: Optional[VerifierConfig] = None):
        self.config = config or VerifierConfig()
        self.logger = logger.bind(component="submission_verifier")

    def verify(self, before: PageSnapshot, after: PageSnapshot) -> SubmissionResult:
        navigated = _strip_fragment(before.url) != _strip_fragment(after.url)

        before_soup = BeautifulSoup(before.html or "", "html.parser")
        after_soup = BeautifulSoup(after.html or "", "html.parser")

        success = _new_items(
            self._indicators(before_soup, self.config.success_selectors, self.config.success_phrases),
            self._indicators(after_soup, self.config.success_selectors, self.config.success_phrases),
        )
        errors = _new_items(
            self._indicators(before_soup, self.config.error_selectors, self.config.error_phrases),
            self._indicators(after_soup, self.config.error_selectors, self.config.error_phrases),
        )

        title_signal = None
        title = (after.title or "").lower()
        if title != (before.title or "").lower():
            if any(k in title for k in self.config.title_error_keywords):
                title_signal = "error"
                errors.append(f"Title: {after.title}")
            elif any(k in title for k in self.config.title_success_keywords):
                title_signal = "success"
                success.append(f"Title: {after.title}")

        if after.status_code is not None and after.status_code >= 400:
            errors.append(f"HTTP {after.status_code}")

        result = SubmissionResult(
            success=not errors and (navigated or bool(success)),
            navigated=navigated,
            redirect_url=after.url if navigated else None,
            title_signal=title_signal,
            success_indicators=success,
            error_indicators=errors,
        )
        self.logger.debug(
            "Submission verified",
            url=after.url,
            success=result.success,
            navigated=navigated,
            success_indicators=len(success),
            error_indicators=len(errors),
        )
        return result

    def _indicators(self, soup: BeautifulSoup, selectors: Tuple[str, ...], phrases: Tuple[str, ...]) -> List[str]:
        found: List[str] = []
        for selector in selectors:
            for element in soup.select(selector):
                if element.name in ("input", "select", "textarea", "form", "body", "html"):
                    continue
                text = _clean(element.get_text(" "))
                if text and len(text) <= self.config.max_indicator_length and text not in found:
                    found.append(text)

        body = soup.body or soup
        page_text = _clean(body.get_text(" ")).lower()
        for phrase in phrases:
            if phrase in page_text:
                marker = f"Text: {phrase}"
                if marker not in found:
                    found.append(marker)
        return found


def _new_items(before: List[str], after: List[str]) -> List[str]:
    existing = set(before)
    return [item for item in after if item not in existing]


def _strip_fragment(url: str) -> str:
    return (url or "").split("#", 1)[0].rstrip("/")


def _clean(text: str) -> str:
    return re.sub(r"\s+", " ", text or "").strip()
