"""Message personalization with ``{{ path.to.value }}`` placeholders."""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Mapping, Optional

from .repositories import CustomerProfile, SalonInfo

PLACEHOLDER = re.compile(r'\{\{\s*([^{}]*?)\s*\}\}')
PATH = re.compile(r'^[A-Za-z_]\w*(\.\w+)*$')

ALLOWED_ROOTS = frozenset({'customer', 'recent', 'salon', 'today', 'season', 'timeGreeting'})

HONORIFIC = '様'
DEFAULTS = {
    'customer.name': HONORIFIC,
    'customer.firstName': HONORIFIC,
}

SEASONS = (
    ((3, 4, 5), '春'),
    ((6, 7, 8), '夏'),
    ((9, 10, 11), '秋'),
)
WINTER = '冬'


class TemplateError(ValueError):
    """Raised for templates that cannot be rendered meaningfully."""


def season_for(moment: datetime) -> str:
    for months, label in SEASONS:
        if moment.month in months:
            return label
    return WINTER


def greeting_for(moment: datetime) -> str:
    if moment.hour < 12:
        return 'おはようございます'
    if moment.hour < 18:
        return 'こんにちは'
    return 'こんばんは'


@dataclass(frozen=True)
class TemplateContext:
    """Snapshot of everything a template may reference for one customer."""

    values: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def build(cls, profile: CustomerProfile, salon: SalonInfo, now: datetime) -> 'TemplateContext':
        name = (profile.name or '').strip()
        return cls(values={
            'customer': {
                'name': name or None,
                'firstName': name.split()[0] if name else None,
                'visitCount': profile.visit_count,
                'lastVisit': profile.last_visit_date,
            },
            'recent': {
                'reservations': [
                    {'date': r.date, 'menu': r.menu, 'staff': r.staff}
                    for r in profile.recent_reservations
                ],
                'menus': [
                    {'name': m.name, 'date': m.date, 'satisfaction': m.satisfaction}
                    for m in profile.recent_menus
                ],
            },
            'salon': {'name': salon.name, 'phone': salon.phone},
            'today': now.date(),
            'season': season_for(now),
            'timeGreeting': greeting_for(now),
        })


def placeholders(template: str) -> list[str]:
    return [match.group(1) for match in PLACEHOLDER.finditer(template)]


def validate(template: Optional[str]) -> list[str]:
    """Check a template before it is stored and return the paths it uses."""
    if template is None or not template.strip():
        raise TemplateError('Template must not be empty')

    leftover = PLACEHOLDER.sub('', template)
    if '{{' in leftover or '}}' in leftover:
        raise TemplateError('Template has unbalanced placeholder braces')

    paths = placeholders(template)
    for path in paths:
        if not PATH.match(path):
            raise TemplateError(f'Invalid placeholder {{{{{path}}}}}')
        root = path.split('.', 1)[0]
        if root not in ALLOWED_ROOTS:
            raise TemplateError(f"Unknown placeholder root '{root}' in {{{{{path}}}}}")
    return paths


def _lookup(values: Mapping[str, Any], path: str) -> Any:
    current: Any = values
    for part in path.split('.'):
        if isinstance(current, Mapping):
            current = current.get(part)
        elif isinstance(current, (list, tuple)) and part.isdigit():
            index = int(part)
            current = current[index] if index < len(current) else None
        else:
            return None
        if current is None:
            return None
    return current


def _format(value: Any) -> str:
    if isinstance(value, datetime):
        return value.strftime('%Y-%m-%d')
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, Decimal):
        return format(value.normalize(), 'f')
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def render(template: str, context: TemplateContext) -> str:
    """Substitute every placeholder; no I/O, same input gives the same output."""

    def substitute(match: re.Match) -> str:
        path = match.group(1)
        value = _lookup(context.values, path)
        if value is None or value == '':
            return DEFAULTS.get(path, '')
        return _format(value)

    return PLACEHOLDER.sub(substitute, template)
