from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from threading import Lock
from typing import Iterable, Sequence

from .errors import NotFoundError, ValidationError

logger = logging.getLogger(__name__)

_PLACEHOLDER_RE = re.compile(r"\{\{(\d+)\}\}")


@dataclass(frozen=True)
class TemplateDefinition:
    name: str
    category: str
    language: str
    body: str

    @property
    def parameter_count(self) -> int:
        indexes = {int(match) for match in _PLACEHOLDER_RE.findall(self.body)}
        return max(indexes, default=0)


DEFAULT_TEMPLATES: tuple[TemplateDefinition, ...] = (
    TemplateDefinition(
        name="trip_confirmation",
        category="UTILITY",
        language="en_US",
        body="Hi {{1}}, your trip {{2}} to {{3}} is confirmed! Your booking ID is {{4}}. Departure: {{5}}.",
    ),
    TemplateDefinition(
        name="payment_pending",
        category="UTILITY",
        language="en_US",
        body="Reminder: a payment of {{1}} {{2}} for invoice {{3}} is due on {{4}}.",
    ),
    TemplateDefinition(
        name="payment_reminder",
        category="UTILITY",
        language="en_US",
        body="This is a reminder that your payment of {{1}} {{2}} for invoice {{3}} is due on {{4}}.",
    ),
    TemplateDefinition(
        name="payment_received",
        category="UTILITY",
        language="en_US",
        body="Confirmation: we have received your payment of {{1}} {{2}}. Receipt ID: {{3}}.",
    ),
    TemplateDefinition(
        name="trip_reminder",
        category="UTILITY",
        language="en_US",
        body='Friendly reminder that your trip "{{1}}" to {{2}} begins on {{3}}.',
    ),
)


class TemplateCatalog:
    def __init__(self, templates: Iterable[TemplateDefinition] = DEFAULT_TEMPLATES) -> None:
        self._lock = Lock()
        self._templates = {template.name: template for template in templates}

    def list_templates(self) -> list[TemplateDefinition]:
        with self._lock:
            templates = list(self._templates.values())
        return sorted(templates, key=lambda value: value.name)

    def get(self, name: str) -> TemplateDefinition:
        with self._lock:
            template = self._templates.get(name.strip())
        if template is None:
            raise NotFoundError(f"template not found: {name}")
        return template

    def render(self, name: str, variables: Sequence[str]) -> str:
        template = self.get(name)
        if len(variables) != template.parameter_count:
            raise ValidationError(
                f"template {template.name} expects {template.parameter_count} variables, got {len(variables)}"
            )

        def _substitute(match: re.Match[str]) -> str:
            return str(variables[int(match.group(1)) - 1])

        return _PLACEHOLDER_RE.sub(_substitute, template.body)

    def sync(self, templates: Iterable[TemplateDefinition]) -> int:
        """Upsert provider templates by name; built-in templates not in the listing are kept."""
        incoming = {template.name: template for template in templates}
        with self._lock:
            self._templates.update(incoming)
        logger.info("template catalog synced: count=%s", len(incoming))
        return len(incoming)
