from __future__ import annotations

import json
from urllib.error import HTTPError, URLError
from urllib.parse import quote
from urllib.request import Request, urlopen

from app.config import settings
from app.logging_config import get_logger
from app.services.dashboard_service import SupplierStats

logger = get_logger('services.insight')

NO_INSIGHT = 'No insight available.'


def build_insight_prompt(stats: list[SupplierStats]) -> str:
    rows = [
        {
            'name': row.name,
            'budget': str(row.budget),
            'spent': str(row.actual),
            'remaining': str(row.residual),
        }
        for row in stats
    ]
    return (
        'Analyse these training suppliers and their contract budgets. '
        'Give 3 short critical insights (max 2 lines each).\n'
        f'Data: {json.dumps(rows)}'
    )


def _generate(prompt: str) -> str:
    url = (
        f"{settings.insight_api_url.rstrip('/')}/models/{quote(settings.insight_model)}:generateContent"
    )
    req = Request(
        url=url,
        data=json.dumps({'contents': [{'parts': [{'text': prompt}]}]}).encode('utf-8'),
        headers={'Content-Type': 'application/json', 'x-goog-api-key': settings.insight_api_key or ''},
        method='POST',
    )
    try:
        with urlopen(req, timeout=settings.insight_timeout_seconds) as response:
            parsed = json.loads(response.read().decode('utf-8'))
    except HTTPError as exc:
        body = exc.read().decode('utf-8', errors='ignore') if exc.fp else ''
        raise RuntimeError(f'Insight API error {exc.code}: {body}') from exc
    except URLError as exc:
        raise RuntimeError(f'Insight API network error: {exc.reason}') from exc

    parts = ((parsed.get('candidates') or [{}])[0].get('content') or {}).get('parts') or []
    return ''.join(str(part.get('text') or '') for part in parts).strip()


def generate_insight(stats: list[SupplierStats]) -> str:
    """Advisory free-text summary; never raises, never feeds back into totals."""
    if not settings.insight_api_key:
        return NO_INSIGHT
    try:
        text = _generate(build_insight_prompt(stats))
    except (RuntimeError, ValueError, AttributeError, OSError) as exc:
        logger.warning('insight generation failed', extra={'error': str(exc)})
        return NO_INSIGHT
    return text or NO_INSIGHT
