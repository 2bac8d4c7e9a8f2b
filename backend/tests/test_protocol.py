"""Tests for protocol formatting, parsing and unique allocation."""

import pytest

from ouvidoria.errors import ProtocolExhaustedError
from ouvidoria.services.protocol import (
    PROTOCOL_ALPHABET,
    generate_unique_protocol,
    is_valid_protocol,
    parse_protocol,
    random_protocol,
)
from tests.factories import make_case


class TestProtocolFormat:
    def test_random_protocol_shape(self):
        for _ in range(50):
            protocol = random_protocol()
            assert is_valid_protocol(protocol)
            assert len(protocol) == 14
            assert protocol[4] == "-" and protocol[9] == "-"

    def test_alphabet_has_no_lookalikes(self):
        for ch in "IO01":
            assert ch not in PROTOCOL_ALPHABET

    def test_parse_canonicalises_user_input(self):
        assert parse_protocol("abcd efgh-jkmn") == "ABCD-EFGH-JKMN"
        assert parse_protocol("ABCDEFGHJKMN") == "ABCD-EFGH-JKMN"

    def test_parse_rejects_bad_input(self):
        assert parse_protocol(None) is None
        assert parse_protocol("ABCD-EFGH") is None
        assert parse_protocol("ABCD-EFGH-JKM0") is None
        assert parse_protocol("ABCD-EFGH-JKMNP") is None

    def test_is_valid_protocol_requires_dashes(self):
        assert not is_valid_protocol("ABCDEFGHJKMN")
        assert not is_valid_protocol("")


@pytest.mark.asyncio
class TestUniqueAllocation:
    async def test_retries_past_a_collision(self, db_session):
        case = await make_case(db_session)
        candidates = iter([case.protocol, "BBBB-CCCC-DDDD"])

        protocol = await generate_unique_protocol(db_session, generator=lambda: next(candidates))
        assert protocol == "BBBB-CCCC-DDDD"

    async def test_exhausted_after_max_attempts(self, db_session):
        case = await make_case(db_session)
        calls = []

        def always_taken():
            calls.append(1)
            return case.protocol

        with pytest.raises(ProtocolExhaustedError):
            await generate_unique_protocol(db_session, max_attempts=3, generator=always_taken)
        assert len(calls) == 3
