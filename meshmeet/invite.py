"""Join links. A link carries only the originator's rendezvous id."""

from __future__ import annotations

from typing import Optional
from urllib.parse import parse_qs, urlencode, urlsplit, urlunsplit

from .config import Config

JOIN_PARAM = 'meet'


def build_join_link(meeting_id: str, base_url: Optional[str] = None) -> str:
	parts = urlsplit(base_url or Config.JOIN_BASE_URL)
	query = parse_qs(parts.query)
	query[JOIN_PARAM] = [meeting_id]
	return urlunsplit(parts._replace(query=urlencode(query, doseq=True)))


def parse_join_code(text: str) -> Optional[str]:
	"""Return the meeting id from a bare code or a join link, or None when there is none."""
	text = (text or '').strip()
	if not text:
		return None
	if '://' not in text and '?' not in text and '=' not in text:
		return text
	values = parse_qs(urlsplit(text).query).get(JOIN_PARAM)
	if values and values[0].strip():
		return values[0].strip()
	return None
