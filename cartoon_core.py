"""Core cartoonize pipeline. Used by both the web app and CLI.

Degrade chain: Gemini transform -> local style recipe -> plain resize.
Every produced image is a 720x1280 PNG, returned as base64 text.
"""

from __future__ import annotations

import base64
import binascii
import io
import logging
import os
import re
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

from PIL import Image, ImageEnhance, ImageFilter, ImageOps

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

TARGET_WIDTH = 720
TARGET_HEIGHT = 1280  # portrait 9:16

DEFAULT_MODEL = "gemini-2.5-flash-image-preview"
DEFAULT_TIMEOUT = 60.0  # seconds

OUTCOME_REMOTE = "remote_success"
OUTCOME_LOCAL = "local_fallback_success"
OUTCOME_ULTIMATE = "ultimate_fallback_success"

STYLE_PROMPTS: Dict[str, str] = {
    "cartoon1": (
        "Create a character illustration from this image in the style of a modern "
        "Pixar or Disney animated film. The character should have soft, rounded "
        "features, large, expressive eyes, and a friendly, inviting expression. "
        "Use smooth, subtle shading and a warm, vibrant color palette. The lighting "
        "should be soft and cinematic, with a gentle glow that gives it a magical, "
        "polished look."
    ),
    "cartoon2": (
        "Transform this image into a character design reminiscent of a modern "
        "DreamWorks animated film. The character should have slightly exaggerated "
        "features and dynamic, spirited facial expressions. Use bold, saturated "
        "colors and dramatic, directional lighting to create a strong sense of "
        "depth. Incorporate subtle textures to add detail and a sense of realism, "
        "while maintaining a playful, stylized aesthetic."
    ),
    "cartoon3": (
        "Convert this image into a character illustration in a modern anime/manga "
        "style. Emphasize clean, sharp lines, slightly elongated proportions, and "
        "either large, expressive eyes (for a classic look) or more realistic, "
        "detailed eyes (for a contemporary feel). Use dynamic shading, a vibrant "
        "yet sometimes muted color palette, and subtle lighting effects that "
        "enhance the character's mood or action. The overall look should be "
        "visually striking, capturing the essence of popular anime or manga "
        "aesthetics."
    ),
}

DEFAULT_PROMPT = (
    "Transform this portrait into a stylized artistic version while keeping the "
    "person recognizable. Use portrait orientation and high quality."
)

STYLES: List[Dict] = [
    {"id": "cartoon1", "name": "3D Animated", "description": "Pixar / Disney feature-film look."},
    {"id": "cartoon2", "name": "DreamWorks", "description": "Exaggerated features, bold saturated colour."},
    {"id": "cartoon3", "name": "Anime", "description": "Clean lines, modern anime / manga shading."},
]


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class CartoonError(RuntimeError):
    """Base class for pipeline errors."""


class RemoteUnavailable(CartoonError):
    """Gemini call failed or returned nothing usable."""


class MalformedImage(CartoonError):
    """Bytes could not be decoded as an image at resize time."""


class LocalProcessingFailed(CartoonError):
    """Local style recipe could not be applied."""


class SourceNotFound(CartoonError):
    pass


class PipelineFailed(CartoonError):
    """Every stage of the degrade chain failed."""

    def __init__(self, message: str, failures: Optional[List[Dict]] = None) -> None:
        super().__init__(message)
        self.failures = failures or []


# ---------------------------------------------------------------------------
# Source images and storage helpers
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class SourceImage:
    data: bytes
    mime_type: str
    path: Optional[str] = None


def sniff_mime_type(data: bytes) -> str:
    """Guess the image mime type from its leading bytes. Defaults to PNG."""
    if data[:2] == b"\xff\xd8":
        return "image/jpeg"
    if data[:4] == b"\x89PNG":
        return "image/png"
    if data[:3] == b"GIF":
        return "image/gif"
    if data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "image/webp"
    return "image/png"


def load_source(path: str) -> SourceImage:
    p = Path(path)
    if not p.is_file():
        raise SourceNotFound(f"Image file not found at path: {path}")
    data = p.read_bytes()
    mime_type = sniff_mime_type(data)
    log.info("Input image: %s, size: %d bytes", mime_type, len(data))
    return SourceImage(data=data, mime_type=mime_type, path=str(p))


def write_bytes(path: str, data: bytes) -> str:
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    p.write_bytes(data)
    return str(p)


_DATA_URI_PREFIX = re.compile(r"^data:image/\w+;base64,")


def save_base64_image(base64_data: str, directory: str, filename: str) -> str:
    """Decode base64 (optionally a data URI) and write it to directory/filename."""
    payload = _DATA_URI_PREFIX.sub("", base64_data.strip())
    return write_bytes(os.path.join(directory, filename), base64.b64decode(payload))


# ---------------------------------------------------------------------------
# Style prompts
# ---------------------------------------------------------------------------

def generate_prompt(style: Optional[str]) -> str:
    """Return the Gemini instruction for a style; unknown styles get the default."""
    return STYLE_PROMPTS.get(style or "", DEFAULT_PROMPT)


# ---------------------------------------------------------------------------
# Image helpers
# ---------------------------------------------------------------------------

_DECODE_ERRORS = (OSError, ValueError, SyntaxError, Image.DecompressionBombError)


def _decode(data: bytes, error_cls: type) -> Image.Image:
    try:
        img = Image.open(io.BytesIO(data))
        img.load()
    except _DECODE_ERRORS as exc:
        raise error_cls(f"Cannot decode image: {exc}") from exc
    return img


def _encode_png(img: Image.Image) -> bytes:
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()


def _looks_like_image(data: bytes) -> bool:
    try:
        Image.open(io.BytesIO(data)).verify()
    except _DECODE_ERRORS:
        return False
    return True


def resize_to_canonical(data: bytes) -> bytes:
    """Cover-fit to 720x1280: scale to fill, crop the excess around the centre."""
    img = _decode(data, MalformedImage)
    if img.mode not in ("RGB", "RGBA"):
        img = img.convert("RGBA")
    fitted = ImageOps.fit(
        img,
        (TARGET_WIDTH, TARGET_HEIGHT),
        method=Image.Resampling.LANCZOS,
        centering=(0.5, 0.5),
    )
    out = _encode_png(fitted)
    log.debug("Resized image: %dx%d -> %dx%d", img.width, img.height, *fitted.size)
    return out


def passthrough_resize(source: SourceImage) -> bytes:
    """Last resort: the untouched original, resized."""
    return resize_to_canonical(source.data)


# ---------------------------------------------------------------------------
# Local fallback recipes
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Recipe:
    name: str
    steps: Tuple[Tuple[str, Dict[str, Any]], ...]


EDGE_ENHANCE_KERNEL = (-1, -1, -1, -1, 9, -1, -1, -1, -1)

STYLE_RECIPES: Dict[str, Recipe] = {
    "cartoon1": Recipe("cartoon1", (
        ("modulate", {"brightness": 1.1, "saturation": 1.2}),
        ("sharpen", {"radius": 1.0, "percent": 150, "threshold": 2}),
    )),
    "cartoon2": Recipe("cartoon2", (
        ("blur", {"radius": 0.5}),
        ("modulate", {"brightness": 1.05, "saturation": 1.15}),
        ("sharpen", {"radius": 0.5, "percent": 80, "threshold": 2}),
    )),
    "cartoon3": Recipe("cartoon3", (
        ("normalize", {"cutoff": 1}),
        ("modulate", {"brightness": 0.98, "saturation": 1.1}),
        ("convolve", {"size": (3, 3), "kernel": EDGE_ENHANCE_KERNEL}),
    )),
}

DEFAULT_RECIPE = Recipe("default", (
    ("modulate", {"brightness": 1.05, "saturation": 1.1}),
))


def select_recipe(style: Optional[str]) -> Recipe:
    return STYLE_RECIPES.get(style or "", DEFAULT_RECIPE)


def _op_modulate(img: Image.Image, brightness: float = 1.0, saturation: float = 1.0) -> Image.Image:
    img = ImageEnhance.Brightness(img).enhance(brightness)
    return ImageEnhance.Color(img).enhance(saturation)


def _op_blur(img: Image.Image, radius: float) -> Image.Image:
    return img.filter(ImageFilter.GaussianBlur(radius))


def _op_sharpen(img: Image.Image, radius: float, percent: int, threshold: int) -> Image.Image:
    return img.filter(ImageFilter.UnsharpMask(radius=radius, percent=percent, threshold=threshold))


def _op_normalize(img: Image.Image, cutoff: float = 0) -> Image.Image:
    return ImageOps.autocontrast(img, cutoff=cutoff)


def _op_convolve(img: Image.Image, size: Tuple[int, int], kernel: Tuple[float, ...]) -> Image.Image:
    return img.filter(ImageFilter.Kernel(size, kernel, scale=1))


_OPERATIONS: Dict[str, Callable[..., Image.Image]] = {
    "modulate": _op_modulate,
    "blur": _op_blur,
    "sharpen": _op_sharpen,
    "normalize": _op_normalize,
    "convolve": _op_convolve,
}


def apply_recipe(img: Image.Image, recipe: Recipe) -> Image.Image:
    # Filters run on RGB; alpha is carried across untouched.
    alpha = None
    if "A" in img.getbands() or "transparency" in img.info:
        img = img.convert("RGBA")
        alpha = img.getchannel("A")
    out = img.convert("RGB")
    for op, params in recipe.steps:
        out = _OPERATIONS[op](out, **params)
    if alpha is not None:
        out.putalpha(alpha)
    return out


def apply_local_style(source: SourceImage, style: Optional[str]) -> bytes:
    """Apply the style's deterministic filter recipe to the original bytes."""
    recipe = select_recipe(style)
    log.info("Applying fallback processing: style=%s recipe=%s", style, recipe.name)
    img = _decode(source.data, LocalProcessingFailed)
    try:
        processed = apply_recipe(img, recipe)
        return _encode_png(processed)
    except (OSError, ValueError) as exc:
        raise LocalProcessingFailed(f"Recipe {recipe.name} failed: {exc}") from exc


# ---------------------------------------------------------------------------
# Gemini response extractors
# ---------------------------------------------------------------------------

_TEXT_PATTERNS = (
    re.compile(r"data:image/[^;]+;base64,([A-Za-z0-9+/=]+)"),
    re.compile(r"base64:([A-Za-z0-9+/=]+)"),
    re.compile(r"([A-Za-z0-9+/=]{100,})"),
)


def _iter_parts(response: Any):
    for candidate in getattr(response, "candidates", None) or []:
        content = getattr(candidate, "content", None)
        for part in getattr(content, "parts", None) or []:
            yield part


def _response_text(response: Any) -> str:
    chunks = [p.text for p in _iter_parts(response) if getattr(p, "text", None)]
    if chunks:
        return "\n".join(chunks)
    return getattr(response, "text", None) or ""


def extract_inline_image(response: Any) -> Optional[bytes]:
    """First inline image payload on any part of any candidate."""
    for i, part in enumerate(_iter_parts(response)):
        inline = getattr(part, "inline_data", None)
        data = getattr(inline, "data", None) if inline is not None else None
        if not data:
            continue
        if isinstance(data, str):
            try:
                data = base64.b64decode(data)
            except (binascii.Error, ValueError):
                log.debug("Inline data in part %d is not valid base64", i)
                continue
        log.info("Found image data in part %d (%d bytes)", i, len(data))
        return data
    return None


def extract_text_image(response: Any) -> Optional[bytes]:
    """Scrape base64 image data out of the response text, pattern by pattern."""
    text = _response_text(response)
    if not text:
        return None
    log.debug("Response text length: %d", len(text))
    for pattern in _TEXT_PATTERNS:
        match = pattern.search(text)
        if not match:
            continue
        b64 = match.group(1)
        try:
            data = base64.b64decode(b64, validate=True)
        except (binascii.Error, ValueError):
            log.debug("Pattern %s matched undecodable base64, trying next", pattern.pattern)
            continue
        if _looks_like_image(data):
            log.info("Found base64 image in response text (%d chars)", len(b64))
            return data
        log.debug("Pattern %s matched non-image data, trying next", pattern.pattern)
    return None


RESPONSE_EXTRACTORS: List[Callable[[Any], Optional[bytes]]] = [
    extract_inline_image,
    extract_text_image,
]


def _describe_remote_error(err: str) -> str:
    lowered = err.lower()
    if "api_key" in lowered or "api key" in lowered:
        return "API key issue - check GOOGLE_API_KEY"
    if "quota" in lowered or "limit" in lowered:
        return "API quota/rate limit exceeded"
    if "model" in lowered:
        return "Model-related error - check GEMINI_MODEL"
    return "Gemini request failed"


# ---------------------------------------------------------------------------
# Gemini client
# ---------------------------------------------------------------------------

class GeminiClient:
    """Explicitly configured Gemini image client. Safe to share between runs."""

    def __init__(
        self,
        api_key: str,
        model: str = DEFAULT_MODEL,
        timeout: float = DEFAULT_TIMEOUT,
        sdk_client: Optional[Any] = None,
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.timeout = timeout
        self._sdk = sdk_client
        if self._sdk is None and api_key:
            from google import genai
            from google.genai import types

            self._sdk = genai.Client(
                api_key=api_key,
                http_options=types.HttpOptions(timeout=int(timeout * 1000)),
            )

    @classmethod
    def from_env(cls) -> "GeminiClient":
        return cls(
            api_key=os.environ.get("GOOGLE_API_KEY", ""),
            model=os.environ.get("GEMINI_MODEL", DEFAULT_MODEL),
            timeout=float(os.environ.get("GEMINI_TIMEOUT", DEFAULT_TIMEOUT)),
        )

    def transform(self, source: SourceImage, prompt: str) -> bytes:
        """Ask Gemini to restyle the image. Raises RemoteUnavailable on any failure."""
        if self._sdk is None:
            raise RemoteUnavailable("GOOGLE_API_KEY not set")

        from google.genai import types

        contents = [
            types.Part.from_text(text=prompt),
            types.Part.from_bytes(data=source.data, mime_type=source.mime_type),
        ]
        t0 = time.time()
        try:
            response = self._sdk.models.generate_content(
                model=self.model,
                contents=contents,
                config=types.GenerateContentConfig(response_modalities=["IMAGE", "TEXT"]),
            )
        except Exception as exc:
            err = str(exc)
            log.error(
                "Gemini error after %.1fs: %s (%s)",
                time.time() - t0, err, _describe_remote_error(err),
            )
            raise RemoteUnavailable(err) from exc

        log.info("Gemini call: model=%s  %.1fs", self.model, time.time() - t0)
        if response is None or (
            not getattr(response, "candidates", None) and not getattr(response, "text", None)
        ):
            raise RemoteUnavailable("No response received from Gemini API")

        for extractor in RESPONSE_EXTRACTORS:
            data = extractor(response)
            if data:
                return data

        raise RemoteUnavailable(
            "No image data found in Gemini response. "
            "The model may not have generated an image."
        )


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------

@dataclass
class PipelineResult:
    image_b64: str
    outcome: str
    style: Optional[str]
    recipe: Optional[str] = None
    failures: List[Dict] = field(default_factory=list)
    duration: float = 0.0

    @property
    def image_bytes(self) -> bytes:
        return base64.b64decode(self.image_b64)


class CartoonPipeline:
    """Runs the degrade chain for one image with optional progress callbacks."""

    def __init__(
        self,
        run_id: str,
        source_path: str,
        style: Optional[str],
        client: GeminiClient,
        progress_cb: Optional[Callable[[Dict], None]] = None,
    ) -> None:
        self.run_id = run_id
        self.source_path = source_path
        self.style = style
        self.client = client
        self.progress_cb = progress_cb

    def _emit(
        self,
        stage: str,
        status: str,
        message: str,
        data: Optional[Dict] = None,
    ) -> None:
        if self.progress_cb is None:
            return
        event: Dict[str, Any] = {
            "stage": stage,
            "status": status,
            "message": message,
            "ts": time.time(),
        }
        if data:
            event["data"] = data
        self.progress_cb(event)

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    def _remote_stage(self, source: SourceImage) -> bytes:
        prompt = generate_prompt(self.style)
        log.debug("[%s] prompt: %s", self.run_id, prompt)
        return resize_to_canonical(self.client.transform(source, prompt))

    def _local_stage(self, source: SourceImage) -> bytes:
        return resize_to_canonical(apply_local_style(source, self.style))

    def _ultimate_stage(self, source: SourceImage) -> bytes:
        return passthrough_resize(source)

    def _stages(self) -> List[Tuple[str, str, Callable[[SourceImage], bytes]]]:
        return [
            ("remote", OUTCOME_REMOTE, self._remote_stage),
            ("local", OUTCOME_LOCAL, self._local_stage),
            ("ultimate", OUTCOME_ULTIMATE, self._ultimate_stage),
        ]

    # ------------------------------------------------------------------
    # Full run
    # ------------------------------------------------------------------

    def run(self) -> PipelineResult:
        log.info("Pipeline start: run=%s  style=%s  source=%s", self.run_id, self.style, self.source_path)
        start = time.time()
        self._emit("pipeline", "started", f"Cartoonizing with style {self.style or 'default'}…")

        try:
            source = load_source(self.source_path)
        except SourceNotFound as exc:
            self._emit("pipeline", "failed", str(exc))
            raise PipelineFailed(str(exc), [{"stage": "load", "error": str(exc)}]) from exc

        failures: List[Dict] = []
        last_exc: Optional[CartoonError] = None
        for stage, outcome, step in self._stages():
            self._emit(stage, "started", f"Trying {stage} stage…")
            try:
                image = step(source)
            except CartoonError as exc:
                last_exc = exc
                failures.append({"stage": stage, "error": str(exc)})
                log.warning(
                    "Stage failed: run=%s  stage=%s  style=%s  cause=%s",
                    self.run_id, stage, self.style, exc,
                )
                self._emit(stage, "failed", f"{stage.title()} stage failed: {exc}")
                continue

            duration = time.time() - start
            result = PipelineResult(
                image_b64=base64.b64encode(image).decode("ascii"),
                outcome=outcome,
                style=self.style,
                recipe=select_recipe(self.style).name if outcome == OUTCOME_LOCAL else None,
                failures=failures,
                duration=duration,
            )
            log.info(
                "Pipeline complete: run=%s  outcome=%s  %.1fs",
                self.run_id, outcome, duration,
            )
            self._emit(
                "pipeline",
                "completed",
                f"Done via {outcome} in {duration:.1f}s",
                {"outcome": outcome, "duration": duration},
            )
            return result

        log.error("All image processing methods failed: run=%s  style=%s", self.run_id, self.style)
        self._emit("pipeline", "failed", "All image processing methods failed")
        raise PipelineFailed("All image processing methods failed", failures) from last_exc
