import locale
import time
from datetime import datetime, timedelta, timezone

import pytest

from winguard.errors import MalformedTimestamp
from winguard.timecodec import FORMAT, decode, encode, whole_seconds


INSTANTS = [
    datetime(2025, 9, 22, 18, 58, 8, tzinfo=timezone.utc),
    datetime(2024, 2, 29, 0, 0, 0, tzinfo=timezone.utc),
    datetime(1999, 12, 31, 23, 59, 59, tzinfo=timezone.utc),
    datetime(1, 1, 1, 0, 0, 0, tzinfo=timezone.utc),
    datetime(9999, 12, 31, 23, 59, 59, tzinfo=timezone.utc),
]


@pytest.mark.parametrize("instant", INSTANTS)
def test_decode_inverts_encode(instant):
    assert decode(encode(instant)) == instant


def test_encode_is_fixed_width_and_zero_padded():
    assert encode(datetime(2025, 1, 2, 3, 4, 5, tzinfo=timezone.utc)) == "2025-01-02 03:04:05"


def test_encode_converts_to_utc_and_drops_microseconds():
    cest = timezone(timedelta(hours=2))
    assert encode(datetime(2025, 9, 22, 20, 58, 8, 999999, tzinfo=cest)) == "2025-09-22 18:58:08"
    assert whole_seconds(datetime(2025, 9, 22, 18, 58, 8, 500000)).microsecond == 0


def test_naive_datetimes_are_taken_as_utc():
    assert decode(encode(datetime(2025, 9, 22, 18, 58, 8))) == INSTANTS[0]


LOCALE_CANDIDATES = ["de_DE.UTF-8", "fr_FR.UTF-8", "ar_SA.UTF-8", "th_TH.UTF-8", "it_IT.UTF-8"]


def _switch_locale(name):
    """Switch to name, or to the always present C locales when it is missing."""
    for candidate in (name, "C.UTF-8", "C"):
        try:
            return locale.setlocale(locale.LC_ALL, candidate)
        except locale.Error:
            continue
    raise AssertionError("no usable locale")


@pytest.fixture
def german_host(monkeypatch):
    """Make every locale-aware formatting call answer like a de_DE host."""
    monkeypatch.setattr(time, "strftime", lambda fmt, t=None: "22.09.2025 18:58:08")
    monkeypatch.setattr(locale, "getlocale", lambda category=locale.LC_CTYPE: ("de_DE", "UTF-8"))
    monkeypatch.setattr(locale, "localeconv", lambda: {"decimal_point": ",", "thousands_sep": "."})
    monkeypatch.setattr(locale, "nl_langinfo", lambda item: "%d.%m.%Y %H:%M:%S", raising=False)


@pytest.mark.parametrize("name", LOCALE_CANDIDATES)
def test_round_trip_does_not_depend_on_host_locale(name):
    saved = locale.setlocale(locale.LC_ALL)
    try:
        _switch_locale(name)
        for instant in INSTANTS:
            assert decode(encode(instant)) == instant
    finally:
        locale.setlocale(locale.LC_ALL, saved)


def test_round_trip_under_simulated_foreign_locale(german_host):
    for instant in INSTANTS:
        text = encode(instant)
        assert text == (
            f"{instant.year:04d}-{instant.month:02d}-{instant.day:02d} "
            f"{instant.hour:02d}:{instant.minute:02d}:{instant.second:02d}"
        )
        assert decode(text) == instant
    assert encode(INSTANTS[0]) == "2025-09-22 18:58:08"
    with pytest.raises(MalformedTimestamp):
        decode(time.strftime("%x %X"))


@pytest.mark.parametrize("text", [
    "22/09/2025 18.58.08",
    "09/22/2025 6:58:08 PM",
    "blocked until 2025-09-22 18:58:08",
    "2025-9-22 18:58:08",
    "2025-09-22T18:58:08",
    "2025-09-22 18:58:08Z",
    "2025-09-22 18:58:08\n",
    " 2025-09-22 18:58:08",
    "2025-09-22 18:58",
    "２０２５-０９-２２ １８:５８:０８",
    "2025-02-30 00:00:00",
    "2025-09-22 24:00:00",
    "",
])
def test_decode_rejects_anything_but_the_exact_format(text):
    with pytest.raises(MalformedTimestamp) as info:
        decode(text)
    assert info.value.value == text
    assert info.value.expected_format == FORMAT


def test_decode_rejects_non_strings():
    with pytest.raises(MalformedTimestamp):
        decode(None)
