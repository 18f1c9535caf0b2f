"""Image generation tool handler (OpenAI-compatible images endpoint)."""

from __future__ import annotations

import base64
import time
from pathlib import Path
from typing import Any

from deskmate.config import DeskmateSettings
from deskmate.core.errors import ToolError
from deskmate.tools.registry import GenerateImageArgs


def handle_generate_image(
    args: GenerateImageArgs,
    settings: DeskmateSettings,
    output_dir: Path,
    client: Any = None,
) -> str:
    """Generate an image and return where it can be found.

    Base64 responses are written under output_dir; URL responses are
    returned as-is.
    """
    if client is None:
        from openai import OpenAI

        kwargs: dict[str, Any] = {"api_key": settings.api_key}
        if settings.base_url:
            kwargs["base_url"] = settings.base_url
        client = OpenAI(**kwargs)

    response = client.images.generate(
        model=settings.image_model,
        prompt=args.prompt,
        size=args.size,
        n=1,
    )
    if not response.data:
        raise ToolError("generate_image", "The images endpoint returned no image")

    image = response.data[0]
    revised = getattr(image, "revised_prompt", None)
    if getattr(image, "b64_json", None):
        output_dir.mkdir(parents=True, exist_ok=True)
        path = output_dir / f"image-{int(time.time() * 1000)}.png"
        path.write_bytes(base64.b64decode(image.b64_json))
        location = str(path)
    elif getattr(image, "url", None):
        location = image.url
    else:
        raise ToolError("generate_image", "The images endpoint returned no image data")

    output = f"Image generated: {location}"
    if revised:
        output += f"\nRevised prompt: {revised}"
    return output
