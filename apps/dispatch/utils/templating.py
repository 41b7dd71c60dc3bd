"""Template rendering for outbound messages."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Optional

from apps.dispatch.utils.validators import VariableValue


@dataclass(frozen=True)
class OutboundContent:
    """What the provider receives: a free-text body or a structured template."""

    body: Optional[str] = None
    provider_template_id: Optional[str] = None
    variables: Dict[str, VariableValue] = field(default_factory=dict)

    @property
    def is_structured(self) -> bool:
        return bool(self.provider_template_id)


def stringify(value: VariableValue) -> str:
    if isinstance(value, bool):
        return 'true' if value else 'false'
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def render_body(body: str | None, variables: Dict[str, VariableValue] | None) -> str:
    """Replace every ``{{key}}`` with its value; unknown placeholders stay as-is."""
    rendered = body or ''
    for key, value in (variables or {}).items():
        rendered = rendered.replace('{{' + key + '}}', stringify(value))
    return rendered


def build_content(template, variables: Dict[str, VariableValue] | None) -> OutboundContent:
    """Prepare provider content for ``template``.

    Provider-native templates skip rendering entirely; the raw variables are
    forwarded as structured content.
    """
    variables = dict(variables or {})
    if template.provider_template_id:
        return OutboundContent(provider_template_id=template.provider_template_id, variables=variables)
    return OutboundContent(body=render_body(template.body, variables), variables=variables)
