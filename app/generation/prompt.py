"""Prompt placeholder parsing for multi-image drafts."""

import re
from typing import Any

# @1, @图1, @image1 (case-insensitive) refer to the n-th uploaded image
PLACEHOLDER_PATTERN = re.compile(r"@(?:图|image)?(\d+)", re.IGNORECASE)

DEFAULT_TEXT_PROMPT = "Generate a video"


def _text(text: str) -> dict[str, Any]:
    return {"meta_type": "text", "text": text}


def _image(index: int) -> dict[str, Any]:
    return {"meta_type": "image", "text": "", "material_ref": {"material_idx": index}}


def build_meta_list(prompt: str | None, image_count: int) -> list[dict[str, Any]]:
    """
    Split a prompt into the draft's interleaved text/image ``meta_list``.

    Placeholders pointing past the uploaded images are dropped. When nothing
    is left (an empty prompt, or only dangling placeholders) every image is
    listed up front followed by the prompt text.
    """
    raw = prompt or ""
    normalized = raw.strip()
    if image_count <= 0:
        return [_text(normalized or DEFAULT_TEXT_PROMPT)]

    meta_list: list[dict[str, Any]] = []
    last_index = 0
    for match in PLACEHOLDER_PATTERN.finditer(raw):
        before = raw[last_index : match.start()]
        if before.strip():
            meta_list.append(_text(before))

        image_index = int(match.group(1)) - 1
        if 0 <= image_index < image_count:
            meta_list.append(_image(image_index))
        last_index = match.end()

    remaining = raw[last_index:]
    if remaining.strip():
        meta_list.append(_text(remaining))

    if meta_list:
        return meta_list

    meta_list.append(_text("Use"))
    for index in range(image_count):
        meta_list.append(_image(index))
        if index < image_count - 1:
            meta_list.append(_text("and"))
    if normalized:
        meta_list.append(_text(f"images, {normalized}"))
    else:
        meta_list.append(_text("images to generate a video"))
    return meta_list
