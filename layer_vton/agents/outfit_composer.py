"""Outfit Composer - dresses the base photo in the effective outfit."""

import logging

from ..config import DEFAULT_BLOCKED_URL_PATTERNS, SamplingSettings
from ..errors import CandidatesExhaustedError, EmptyOutfitError, MissingBaseImageError
from ..models.image_ref import ImageRef, InlineData, RemoteUrl
from ..models.layers import Outfit, effective_outfit, layer_index_of, layer_label
from ..services.generation_client import GenerationBackend, GenerationRequest, GenerationResponse
from ..services.model_fallback import CandidateChain, Verdict
from ..utils.image_codec import ImageCodec
from ..utils.response_parser import first_usable_image_url, is_blocked_url

logger = logging.getLogger(__name__)


COMPOSITION_PROMPT = """Virtual try-on. Dress the person from image 1 in the garments from the following images.

## IDENTITY - IMAGE 1 IS THE REFERENCE AND MUST NOT CHANGE:
Keep the exact same person: face, hair, body shape, pose, skin tone.
Keep the exact same background and lighting.
Only the clothing changes.

## GARMENTS:
Every image after image 1 is a garment reference ONLY.
If a garment image shows a person, ignore that person completely.
{garments}

## WEARING ORDER (innermost first):
{order}
Each layer is worn over the ones before it. Outer layers cover inner layers naturally.

Output a single photorealistic image of the same person wearing this outfit."""

STYLING_SECTION = """

## ADDITIONAL STYLING REQUEST:
{prompt}"""


def build_composition_prompt(layers: list[tuple[int, str]], free_text_prompt: str = "") -> str:
    """Build the instruction for an ordered list of (layer number, label) pairs.

    Garment images are numbered from 2 in the same order as ``layers``.
    """
    garments = "\n".join(
        f"- Image {position}: {label}" for position, (_, label) in enumerate(layers, start=2)
    )
    order = " -> ".join(f"{label} (layer {layer})" for layer, label in layers)
    prompt = COMPOSITION_PROMPT.format(garments=garments, order=order)
    if free_text_prompt.strip():
        prompt += STYLING_SECTION.format(prompt=free_text_prompt.strip())
    return prompt


class OutfitComposer:
    """Synthesizes the base person wearing the merged outfit.

    Every request starts from the original base image, never from a previous
    composite, so repeated edits do not drift.
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
        self.sampling = sampling or SamplingSettings(temperature=0.0, top_k=1, top_p=0.1)
        self.blocked_patterns = (
            list(blocked_patterns) if blocked_patterns is not None else list(DEFAULT_BLOCKED_URL_PATTERNS)
        )
        self.chain = CandidateChain("composition", backend, candidates, timeout=timeout)

    async def collect_layers(self, outfit: Outfit) -> list[tuple[int, str, InlineData]]:
        """Readable garments of ``outfit`` in wearing order."""
        layers = []
        for category, index, ref in outfit.filled():
            slot = f"{category.value}[{index}]"
            if isinstance(ref, RemoteUrl) and is_blocked_url(ref.url, self.blocked_patterns):
                logger.warning(f"Skipping {slot}: denylisted URL {ref.url}")
                continue
            inline = await self.codec.to_inline(ref)
            if inline is None:
                logger.warning(f"Skipping {slot}: image could not be read")
                continue
            layers.append((layer_index_of(category, index), layer_label(category, index), inline))
        return layers

    async def _interpret(self, response: GenerationResponse) -> Verdict[InlineData]:
        image = response.first_image()
        if image is not None:
            return Verdict.accept(image)

        url = first_usable_image_url(response.text, self.blocked_patterns)
        if url is not None:
            inline = await self.codec.materialize_url(url)
            if inline is not None:
                return Verdict.accept(inline)
            return Verdict.skip(f"could not fetch {url}")

        return Verdict.skip("no image in response")

    async def compose(
        self,
        base_image: ImageRef | None,
        user_slots: Outfit,
        baseline_outfit: Outfit,
        free_text_prompt: str = "",
    ) -> InlineData:
        """Generate the composite image.

        Raises:
            MissingBaseImageError: no readable base photo
            EmptyOutfitError: nothing to wear after merging and filtering
            CandidatesExhaustedError: every model failed
        """
        if base_image is None:
            raise MissingBaseImageError("Upload a photo first")
        base = await self.codec.to_inline(base_image)
        if base is None:
            raise MissingBaseImageError("The uploaded photo could not be read")

        layers = await self.collect_layers(effective_outfit(user_slots, baseline_outfit))
        if not layers:
            raise EmptyOutfitError("Choose at least one garment first")

        logger.info(f"Composing {len(layers)} layers: {', '.join(label for _, label, _ in layers)}")
        request = GenerationRequest(
            images=[base] + [inline for _, _, inline in layers],
            instruction=build_composition_prompt(
                [(layer, label) for layer, label, _ in layers], free_text_prompt
            ),
            settings=self.sampling,
        )

        result = await self.chain.run(request, self._interpret)
        if result.exhausted:
            raise CandidatesExhaustedError("composition", result.last_reason)
        logger.info(f"Composite generated by {result.candidate}")
        return result.value
