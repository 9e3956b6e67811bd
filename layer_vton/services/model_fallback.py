"""Try ranked model candidates one after another until one gives a usable answer."""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Generic, TypeVar

from ..errors import ProviderError
from .generation_client import GenerationBackend, GenerationRequest, GenerationResponse

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class Verdict(Generic[T]):
    """What an interpreter decided about one response."""
    accepted: bool
    value: T | None = None
    reason: str | None = None

    @classmethod
    def accept(cls, value: T) -> "Verdict[T]":
        return cls(accepted=True, value=value)

    @classmethod
    def skip(cls, reason: str) -> "Verdict[T]":
        return cls(accepted=False, reason=reason)


@dataclass
class ChainResult(Generic[T]):
    """Outcome of a chain run. ``candidate`` is None when every model failed."""
    value: T | None = None
    candidate: str | None = None
    attempts: list[str] = field(default_factory=list)
    last_reason: str | None = None

    @property
    def exhausted(self) -> bool:
        return self.candidate is None


Interpreter = Callable[[GenerationResponse], Awaitable[Verdict[T]]]


class CandidateChain:
    """Sequential fallback over a ranked list of models for one task."""

    def __init__(
        self,
        task: str,
        backend: GenerationBackend,
        candidates: list[str],
        timeout: float = 30.0,
    ):
        self.task = task
        self.backend = backend
        self.candidates = list(candidates)
        self.timeout = timeout

    async def run(self, request: GenerationRequest, interpret: Interpreter) -> ChainResult:
        """Try each candidate in order; stop at the first accepted verdict."""
        result: ChainResult = ChainResult()

        for model in self.candidates:
            result.attempts.append(model)
            try:
                response = await asyncio.wait_for(
                    self.backend.generate(model, request),
                    timeout=self.timeout,
                )
            except ProviderError as e:
                result.last_reason = str(e)
                if e.is_transient:
                    logger.info(f"[{self.task}] {model} unavailable ({e.kind.value}), trying next model")
                else:
                    logger.warning(f"[{self.task}] {model} failed ({e.kind.value}): {e}, trying next model")
                continue
            except asyncio.TimeoutError:
                result.last_reason = f"{model} timed out after {self.timeout}s"
                logger.info(f"[{self.task}] {result.last_reason}, trying next model")
                continue

            verdict = await interpret(response)
            if verdict.accepted:
                result.value = verdict.value
                result.candidate = model
                logger.debug(f"[{self.task}] accepted answer from {model}")
                return result

            result.last_reason = f"{model}: {verdict.reason}"
            logger.debug(f"[{self.task}] {model} gave nothing usable: {verdict.reason}")

        logger.warning(
            f"[{self.task}] all {len(self.candidates)} models failed (last: {result.last_reason})"
        )
        return result
