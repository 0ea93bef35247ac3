"""換髮型提示詞組裝。"""

from __future__ import annotations

from hair_studio.common.models.generation import GenerationMode
from hair_studio.common.models.style import StyleDescriptor

VOLUME_PHRASES = {
    "flat": "with flat sleek low volume",
    "natural": "with natural medium volume",
    "voluminous": "with high volume and body",
}

PARTING_PHRASES = {
    "left": "parted on the left side",
    "center": "parted in the center",
    "right": "parted on the right side",
    "none": "with no visible part",
}

PRESERVE_RULES = (
    "Keep the face, facial features, skin tone, expression, neck, body, clothing, "
    "accessories, background and lighting EXACTLY the same as the original photo. "
    "The ONLY visible difference must be the hair. Output one photorealistic image."
)


def build_style_prompt(style: StyleDescriptor) -> str:
    """把髮型描述、顏色、髮量、分線組成一句英文描述。"""
    parts = []
    head = style.description or style.name or "the hairstyle shown in the reference photo"
    if style.name and style.description and style.name.lower() not in style.description.lower():
        head = f"{style.name}: {style.description}"
    parts.append(head)

    color = (style.color or "").strip()
    if color and color.lower() != "natural":
        parts.append(f"hair color {color}")

    if style.volume != "natural":
        parts.append(VOLUME_PHRASES[style.volume])
    if style.parting != "none":
        parts.append(PARTING_PHRASES[style.parting])

    if style.texture:
        parts.append(f"suited to {style.texture} hair texture")
    return ", ".join(parts)


def build_instruction(style: StyleDescriptor, mode: GenerationMode) -> str:
    hairstyle = build_style_prompt(style)

    if mode is GenerationMode.MASK_INPAINT:
        return (
            f"Change the hairstyle to: {hairstyle}.\n"
            "The second image is an edit mask. WHITE areas are the hair region and may be regenerated; "
            "BLACK areas are protected and must not change at all. "
            "Blend the new hair naturally at the hairline.\n"
            + PRESERVE_RULES
        )
    if mode is GenerationMode.REFERENCE_GUIDED:
        return (
            "Image 1 is the user. Image 2 is a hairstyle reference.\n"
            f"Give the user in Image 1 the hairstyle from Image 2 ({hairstyle}). "
            "Extract ONLY the hair from the reference. DO NOT copy the reference person's face, body, pose or clothing.\n"
            + PRESERVE_RULES
        )
    return f"Edit this portrait so the person has {hairstyle}.\n" + PRESERVE_RULES


# Stability inpaint 使用的負面提示
NEGATIVE_PROMPT = "blurry, distorted face, changed face, different person, bad hair, unnatural, artifacts"

BOUNDARY_PROMPT = (
    "You are a precise face-geometry annotator. Look at the portrait and return ONLY a JSON object with "
    "these keys, each a number between 0 and 1 relative to the image size:\n"
    "- forehead_top: y of the hairline (top of the forehead)\n"
    "- eye_level: y of the eyes\n"
    "- face_left: x of the left edge of the face (cheek line, excluding hair and ears)\n"
    "- face_right: x of the right edge of the face\n"
    "- chin_bottom: y of the bottom of the chin\n"
    "x grows to the right and y grows downward. Do not add any other text."
)

REFERENCE_STYLE_PROMPT = (
    "Look at the hairstyle in this photo and describe ONLY the hair, never the person's face or identity. "
    "Return ONLY a JSON object with these keys:\n"
    "- style_name: a short common name for the hairstyle, e.g. \"layered bob\"\n"
    "- description: one sentence describing the cut and shape\n"
    "- length: one of short, medium, long\n"
    "- texture: one of straight, wavy, curly, permed\n"
    "- volume: one of flat, natural, voluminous\n"
    "- color: the hair color in a few words\n"
    "Do not add any other text."
)
