"""Tests for the ranked-candidate fallback chain."""

import pytest

from layer_vton.errors import ProviderError, ProviderErrorKind
from layer_vton.services.generation_client import GenerationRequest
from layer_vton.services.model_fallback import CandidateChain, Verdict

from fakes import HANG, FakeBackend, rate_limited, text_response


async def accept_text(response):
    if response.text:
        return Verdict.accept(response.text)
    return Verdict.skip("empty")


@pytest.fixture
def request_():
    return GenerationRequest(instruction="describe")


class TestCandidateChain:
    """Tests for sequential fallback."""

    @pytest.mark.asyncio
    async def test_stops_at_first_success(self, request_):
        backend = FakeBackend({"a": [text_response("from a")], "b": [text_response("from b")]})
        chain = CandidateChain("test", backend, ["a", "b"])

        result = await chain.run(request_, accept_text)

        assert result.value == "from a"
        assert result.candidate == "a"
        assert backend.models_called == ["a"]

    @pytest.mark.asyncio
    async def test_tries_candidates_in_rank_order(self, request_):
        backend = FakeBackend({
            "a": [rate_limited("a")],
            "b": [ProviderError(ProviderErrorKind.MODEL_NOT_FOUND, "b missing", 404)],
            "c": [text_response("from c")],
            "d": [text_response("from d")],
        })
        chain = CandidateChain("test", backend, ["a", "b", "c", "d"])

        result = await chain.run(request_, accept_text)

        assert backend.models_called == ["a", "b", "c"]
        assert result.attempts == ["a", "b", "c"]
        assert result.candidate == "c"

    @pytest.mark.asyncio
    async def test_skip_verdict_moves_on(self, request_):
        backend = FakeBackend({"a": [text_response("")], "b": [text_response("ok")]})
        chain = CandidateChain("test", backend, ["a", "b"])

        result = await chain.run(request_, accept_text)

        assert result.candidate == "b"

    @pytest.mark.asyncio
    async def test_timeout_advances(self, request_):
        backend = FakeBackend({"slow": [HANG], "fast": [text_response("ok")]})
        chain = CandidateChain("test", backend, ["slow", "fast"], timeout=0.05)

        result = await chain.run(request_, accept_text)

        assert result.candidate == "fast"
        assert backend.models_called == ["slow", "fast"]

    @pytest.mark.asyncio
    async def test_exhaustion_keeps_last_reason(self, request_):
        backend = FakeBackend({"a": [rate_limited("a")], "b": [rate_limited("b")]})
        chain = CandidateChain("test", backend, ["a", "b"])

        result = await chain.run(request_, accept_text)

        assert result.exhausted
        assert result.value is None
        assert "b returned 429" in result.last_reason

    @pytest.mark.asyncio
    async def test_no_candidates_is_exhausted(self, request_):
        chain = CandidateChain("test", FakeBackend(), [])

        result = await chain.run(request_, accept_text)

        assert result.exhausted
        assert result.attempts == []

    @pytest.mark.asyncio
    async def test_server_errors_are_logged_louder_than_rate_limits(self, request_, caplog):
        server_error = ProviderError(ProviderErrorKind.SERVER_ERROR, "b returned 500", status_code=500)
        backend = FakeBackend({
            "a": [rate_limited("a")],
            "b": [server_error],
            "c": [text_response("ok")],
        })
        chain = CandidateChain("test", backend, ["a", "b", "c"])

        with caplog.at_level("INFO", logger="layer_vton.services.model_fallback"):
            result = await chain.run(request_, accept_text)

        assert result.value == "ok"
        levels = {r.getMessage().split()[1]: r.levelname for r in caplog.records if "trying next" in r.getMessage()}
        assert levels == {"a": "INFO", "b": "WARNING"}
