import re
from datetime import datetime, timezone

from .errors import MalformedTimestamp

# Compatibility contract with rules already installed on the host.
FORMAT = "yyyy-MM-dd HH:mm:ss"

# re.ASCII keeps \d from matching non-Latin digits.
_PATTERN = re.compile(
	r"(?P<year>\d{4})-(?P<month>\d{2})-(?P<day>\d{2}) "
	r"(?P<hour>\d{2}):(?P<minute>\d{2}):(?P<second>\d{2})",
	re.ASCII,
)


def utcnow() -> datetime:
	return datetime.now(timezone.utc)


def to_utc(instant: datetime) -> datetime:
	if instant.tzinfo is None:
		return instant.replace(tzinfo=timezone.utc)
	return instant.astimezone(timezone.utc)


def whole_seconds(instant: datetime) -> datetime:
	return to_utc(instant).replace(microsecond=0)


def encode(instant: datetime) -> str:
	"""Render an instant as UTC ``yyyy-MM-dd HH:mm:ss``.

	Built from integer fields rather than strftime so that no locale or
	platform setting can change the output. Sub-second precision is dropped.
	"""
	t = to_utc(instant)
	return (
		f"{t.year:04d}-{t.month:02d}-{t.day:02d} "
		f"{t.hour:02d}:{t.minute:02d}:{t.second:02d}"
	)


def decode(text: str) -> datetime:
	"""Parse the exact output of :func:`encode` back to an aware UTC datetime.

	Anything else, including otherwise valid dates in another layout, raises
	:class:`MalformedTimestamp`.
	"""
	if not isinstance(text, str):
		raise MalformedTimestamp(text, FORMAT)
	m = _PATTERN.fullmatch(text)
	if not m:
		raise MalformedTimestamp(text, FORMAT)
	try:
		return datetime(
			int(m.group("year")),
			int(m.group("month")),
			int(m.group("day")),
			int(m.group("hour")),
			int(m.group("minute")),
			int(m.group("second")),
			tzinfo=timezone.utc,
		)
	except ValueError as e:
		raise MalformedTimestamp(text, FORMAT) from e
