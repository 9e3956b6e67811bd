"""Garment Detector - asks the generation service which layers a person is wearing."""

import logging

from ..config import DEFAULT_BLOCKED_URL_PATTERNS, SamplingSettings
from ..models.image_ref import ImageRef, RemoteUrl
from ..models.layers import DETECTION_SLOTS, GarmentSlot, Outfit
from ..models.outcomes import DetectionOutcome, Failed, Found, NotPresent
from ..services.generation_client import GenerationBackend, GenerationRequest, GenerationResponse
from ..services.model_fallback import CandidateChain, Verdict
from ..utils.image_codec import ImageCodec
from ..utils.response_parser import first_usable_image_url, is_negative_answer

logger = logging.getLogger(__name__)


DETECTION_PROMPT = """Look carefully at the person in this photo.

Target garment: {name}
{description}

STEP 1 - EXISTENCE CHECK (answer this first):
Is the person clearly wearing this exact type of garment?
- If NO, reply with the single word "NO" and nothing else.
- If YES, start your reply with "YES" and continue to step 2.

STEP 2 - EXTRACTION (only if YES):
Produce an isolated product image of ONLY this garment:
- Flat lay or ghost mannequin style on a plain white background
- Keep the exact color, pattern, texture, and details seen in the photo
- No person, no body parts, no other garments

RULES:
- Never invent a garment that is not visible in the photo
- Do not confuse layers: a shirt under a sweater is a base inner, not a main top
- Return the image directly as inline image data (preferred)
- If you can only give a link, give a direct image URL ending in .jpg, .png or .webp"""


def build_detection_prompt(slot: GarmentSlot) -> str:
    return DETECTION_PROMPT.format(name=slot.name, description=slot.description)


class GarmentDetector:
    """Detects and extracts each garment layer from a base photo.

    Every slot is one logical request through the shared detection
    ``CandidateChain``. A NO answer is final; provider errors and empty
    answers move on to the next model.
    """

    def __init__(
        self,
        backend: GenerationBackend,
        codec: ImageCodec,
        candidates: list[str],
        sampling: SamplingSettings | None = None,
        timeout: float = 30.0,
        blocked_patterns: list[str] | None = None,
    ):
        self.codec = codec
        self.sampling = sampling or SamplingSettings()
        self.blocked_patterns = (
            list(blocked_patterns) if blocked_patterns is not None else list(DEFAULT_BLOCKED_URL_PATTERNS)
        )
        self.chain = CandidateChain("detection", backend, candidates, timeout=timeout)

    async def _interpret(self, response: GenerationResponse) -> Verdict[DetectionOutcome]:
        text = response.text
        if is_negative_answer(text):
            return Verdict.accept(NotPresent())

        image = response.first_image()
        if image is not None:
            return Verdict.accept(Found(image))

        url = first_usable_image_url(text, self.blocked_patterns)
        if url is not None:
            inline = await self.codec.materialize_url(url)
            if inline is not None:
                return Verdict.accept(Found(inline))
            # Keep the pointer; the persistence codec will retry the fetch
            return Verdict.accept(Found(RemoteUrl(url=url)))

        return Verdict.skip("no image in response")

    async def detect(self, base_image: ImageRef, slot: GarmentSlot) -> DetectionOutcome:
        """Ask whether ``slot`` is worn and extract it if so."""
        inline = await self.codec.to_inline(base_image)
        if inline is None:
            return Failed("base image could not be read")

        request = GenerationRequest(
            images=[inline],
            instruction=build_detection_prompt(slot),
            settings=self.sampling,
        )
        result = await self.chain.run(request, self._interpret)
        if result.exhausted:
            return Failed(result.last_reason or "no candidate models configured")
        return result.value

    async def detect_all(self, base_image: ImageRef) -> Outfit:
        """Run all six slots in turn. A failed slot is left empty."""
        # Read once so a remote base is not fetched six times
        inline = await self.codec.to_inline(base_image)
        outfit = Outfit()
        summary = []

        for slot in DETECTION_SLOTS:
            if inline is None:
                outcome: DetectionOutcome = Failed("base image could not be read")
            else:
                outcome = await self.detect(inline, slot)

            if isinstance(outcome, Found):
                outfit.set(slot.category, slot.index, outcome.image)
                summary.append(f"{slot.key}=found")
            elif isinstance(outcome, NotPresent):
                summary.append(f"{slot.key}=none")
            else:
                logger.warning(f"Detection failed for {slot.key}: {outcome.reason}")
                summary.append(f"{slot.key}=failed")

        logger.info(f"Detection summary: {', '.join(summary)}")
        return outfit
