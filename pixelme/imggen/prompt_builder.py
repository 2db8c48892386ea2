"""Prompt construction helpers for the restyle, fill and palette steps."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable

DEFAULT_FILL_INSTRUCTION = (
    "Remove everything inside the masked areas, then fill the gap by extending the surrounding "
    "background. Continue the nearby textures, colors and structures so the filled region blends "
    "in seamlessly, and do not reintroduce the removed objects."
)

POSE_PRESERVATION = (
    "Keep exactly the same pose, position, head angle and facing direction as the original photo; "
    "never rotate or mirror the person."
)

IDENTITY_PRESERVATION = (
    "Preserve the person's apparent gender, age, skin tone, hair color, hair style, facial "
    "expression and clothing colors. Look closely at the actual hair pixels instead of guessing."
)

STYLE_DESCRIPTIONS: dict[str, str] = {
    "Simpsons": (
        "a classic American animated sitcom look: yellow cartoon skin, large round white eyes with small "
        "black pupils, thick black outlines and flat 2D shading, four-fingered hands"
    ),
    "Studio Ghibli": (
        "hand-drawn Studio Ghibli anime: large expressive eyes with detailed irises, soft watercolor "
        "shading and gentle lighting"
    ),
    "South Park": (
        "South Park cut-out animation: a round geometric head, tiny dot eyes, a simple line mouth and "
        "construction-paper shapes with thick outlines"
    ),
    "Family Guy": (
        "Family Guy animation: an elongated oval head, large white oval eyes, thick black outlines and "
        "flat 2D colors"
    ),
    "Dragon Ball": (
        "dynamic martial-arts anime with cel shading, vibrant colors and large expressive eyes; spiky "
        "hair for men and flowing hair for women"
    ),
    "Anime": (
        "modern high-quality anime: large detailed eyes, smooth highlighted hair, clean cel shading "
        "and vibrant colors"
    ),
    "Rick and Morty": (
        "a crude sci-fi cartoon look: simple geometric features, large oval eyes, thick black borders "
        "and slightly exaggerated proportions"
    ),
}

PALETTE_REDUCTION_PROMPT = (
    "Create an embroidery patch version of this image. Flatten every area to a solid color and remove "
    "gradients and shading. Use at most 15 distinct colors while keeping every original hue family: "
    "white stays white, brown stays brown, red stays red. Do not add outlines, borders or stitching "
    "lines of any kind. Keep transparent areas fully transparent and never add a background."
)

PALETTE_REDUCTION_NEGATIVE_PROMPT = (
    "outlines, borders, black outlines, stitching lines, contour lines, line art, color shifting, "
    "recoloring, hue changes, gradients, shading, soft edges, background fill, opaque background"
)

PALETTE_REDUCTION_OPTIONS = {
    "negative_prompt": PALETTE_REDUCTION_NEGATIVE_PROMPT,
    "output_quality": 95,
    "guidance_scale": 8.0,
    "num_inference_steps": 30,
    "strength": 0.65,
}


@dataclass(slots=True)
class StylePromptContext:
    """Information used to build the restyle prompt."""

    style: str
    clothing: str | None = None
    keep_background: bool = True


class PromptBuilder:
    """Builds textual prompts for the instruction-driven image models."""

    def build_style(self, context: StylePromptContext, extra_instructions: Iterable[str] | None = None) -> str:
        """Return the instruction converting a photo into ``context.style``."""

        description = STYLE_DESCRIPTIONS.get(context.style) or f"{context.style.lower()} cartoon animation style"
        parts = [
            POSE_PRESERVATION,
            f"Convert this person into {description}.",
            IDENTITY_PRESERVATION,
        ]
        if context.keep_background:
            parts.append("Keep the original background unchanged.")
        if context.clothing:
            parts.append(f"The artwork will be printed on a {context.clothing}, so keep the subject clearly readable.")
        parts.extend(extra_instructions or [])
        return " ".join(part for part in parts if part).strip()

    @staticmethod
    def fill_instruction(instruction: str | None) -> str:
        """Return ``instruction`` or the default background-extension instruction when blank."""

        if instruction is None or not instruction.strip():
            return DEFAULT_FILL_INSTRUCTION
        return instruction.strip()
