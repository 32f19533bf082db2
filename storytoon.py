# storytoon.py
import os
import io
import re
import sys
import json
import base64
import random
import string
import argparse
import threading
from pathlib import Path
from typing import Any, Callable, Dict, List, Literal, Optional, Sequence, Tuple

from dotenv import load_dotenv
from pydantic import BaseModel, Field
from PIL import Image

# Google AI SDK (story splitting and default panel rendering)
from google import genai
from google.genai import types

# Fal AI SDK (optional image backend)
import fal_client
import requests

# ------------------ ENV & CONFIG ------------------
load_dotenv()

# Models (override via env if your account uses different names)
PLANNING_MODEL = os.getenv("PLANNING_MODEL", "gemini-2.5-flash")
IMAGE_MODEL = os.getenv("IMAGE_MODEL", "gemini-2.5-flash-image-preview")
# "gemini" calls IMAGE_MODEL directly, "fal" goes through fal-ai/nano-banana/edit
IMAGE_BACKEND = os.getenv("IMAGE_BACKEND", "gemini").strip().lower()
FAL_EDIT_ENDPOINT = os.getenv("FAL_EDIT_ENDPOINT", "fal-ai/nano-banana/edit")

PRINT_PROMPTS = os.getenv("PRINT_PROMPTS", "0") == "1"
OUTPUT_DIR = Path(os.getenv("STORYTOON_OUTPUT_DIR", "output"))

PANEL_COUNT = 4
MAX_CHARACTERS = 2
PLACEHOLDER_SCENE = "..."
# characters fill at most 80% of their section width and of the canvas height
CHARACTER_FILL = 0.8
BACKGROUND_COLOR = (255, 255, 255)

AspectRatio = Literal["16:9", "9:16"]
CANVAS_SIZES: Dict[str, Tuple[int, int]] = {
    "16:9": (1920, 1080),
    "9:16": (1080, 1920),
}
DEFAULT_ASPECT_RATIO: AspectRatio = "16:9"

MIME_TYPES = {
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
}

# Values a deploy template leaves behind when the key was never injected
PLACEHOLDER_KEYS = {
    "",
    "api_key",
    "your_api_key",
    "your-api-key",
    "your_api_key_here",
    "changeme",
}

SPLIT_FAILED_MESSAGE = "Failed to split the story into panels. Please try rephrasing your story."
PANEL_FAILED_MESSAGE = ("Failed to generate the comic panel. The model may have safety "
                        "restrictions on the prompt or image.")
NO_IMAGE_MESSAGE = "Image generation returned no image data."


class ConfigurationError(RuntimeError):
    """The API credential is missing or still a placeholder."""


class GenerationError(RuntimeError):
    """An external AI call failed or returned nothing usable."""


class CompositeError(RuntimeError):
    """Character references could not be decoded or drawn."""


class SessionBusyError(RuntimeError):
    pass


def get_api_key() -> str:
    key = (os.getenv("GEMINI_API_KEY") or os.getenv("API_KEY") or "").strip()
    if key.lower() in PLACEHOLDER_KEYS or key.startswith("{{"):
        raise ConfigurationError(
            "GEMINI_API_KEY is not configured. Set it in the environment or in .env")
    return key


def configure_fal() -> None:
    fal_key = os.getenv("FAL_API_KEY") or os.getenv("FAL_KEY")
    if not fal_key:
        raise ConfigurationError("Missing FAL_API_KEY in .env (required by IMAGE_BACKEND=fal)")
    os.environ["FAL_KEY"] = fal_key

# ------------------ PROMPTS -----------------------
PROMPTS_DIR = Path(__file__).parent / "prompts"


def load_prompt(name: str) -> str:
    p = PROMPTS_DIR / f"{name}.txt"
    if not p.exists():
        raise FileNotFoundError(f"Prompt file not found: {p}")
    return p.read_text(encoding="utf-8")


STORY_SPLIT_TEMPLATE = load_prompt("story_split")
PANEL_IMAGE_TEMPLATE = load_prompt("panel_image")

# ------------------ DATA MODELS -------------------


class CharacterRef(BaseModel):
    data: bytes
    mime_type: str = "image/png"
    filename: str = ""

    @property
    def preview(self) -> str:
        """Render-ready handle for the UI."""
        return data_uri(self.data, self.mime_type)

    @classmethod
    def from_path(cls, path: Path) -> "CharacterRef":
        path = Path(path)
        return cls(data=path.read_bytes(), mime_type=mime_type_for(path.name), filename=path.name)


class CompositeImage(BaseModel):
    data: str  # base64, no data: prefix
    mime_type: str = "image/png"

    @property
    def raw(self) -> bytes:
        return base64.b64decode(self.data)


class GeneratedImage(BaseModel):
    data: bytes
    mime_type: str = "image/png"

    @property
    def data_uri(self) -> str:
        return data_uri(self.data, self.mime_type)

    def to_png_bytes(self) -> bytes:
        if self.mime_type == "image/png":
            return self.data
        return pil_to_png_bytes(image_bytes_to_pil(self.data))


class Panel(BaseModel):
    story: str = ""
    image: Optional[GeneratedImage] = None
    characters: List[CharacterRef] = Field(default_factory=list)
    is_generating: bool = False

# ------------------ UTILITIES ---------------------


def fill(template: str, **kv):
    """Replace only specific placeholders, leaving JSON braces alone."""
    out = template
    for k, v in kv.items():
        out = out.replace(f"{{{k}}}", v)
    return out


def ensure_dir(p: Path) -> None:
    p.mkdir(parents=True, exist_ok=True)


def slugify(text: str, fallback: str = "item") -> str:
    text = text.strip().lower()
    text = re.sub(r"[^a-z0-9]+", "-", text).strip("-")
    return text[:40].strip("-") or fallback


def mime_type_for(filename: str) -> str:
    suffix = Path(filename).suffix.lower()
    if suffix not in MIME_TYPES:
        raise ValueError("Only PNG and JPEG files are allowed")
    return MIME_TYPES[suffix]


def data_uri(data: bytes, mime_type: str) -> str:
    return f"data:{mime_type};base64,{base64.b64encode(data).decode('utf-8')}"


def first_json_block(s: str) -> str:
    # Find all potential JSON blocks and return the largest valid one
    starts = [m.start() for m in re.finditer(r"[\{\[]", s)]
    best_chunk = None
    best_size = 0

    for i in starts:
        for j in range(len(s), i + 1, -1):
            chunk = s[i:j]
            try:
                json.loads(chunk)
            except ValueError:
                continue
            if len(chunk) > best_size:
                best_chunk = chunk
                best_size = len(chunk)
            break

    if best_chunk:
        return best_chunk
    raise ValueError("No valid JSON in model output")


def image_bytes_to_pil(b: bytes) -> Image.Image:
    return Image.open(io.BytesIO(b)).convert("RGBA")


def pil_to_png_bytes(img: Image.Image) -> bytes:
    """Converts a PIL Image object to PNG bytes."""
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()


def panel_filename(index: int) -> str:
    return f"storytoon-panel-{index + 1}.png"

# ------------------ COMPOSITOR --------------------


def composite_characters(characters: Sequence[CharacterRef],
                         aspect_ratio: AspectRatio = DEFAULT_ASPECT_RATIO) -> CompositeImage:
    """
    Lay the character references side by side on a white canvas.

    The canvas is split into one equal-width section per character. Each
    character is scaled to fit 80% of its section width and 80% of the canvas
    height, keeping its proportions, and drawn centred in its section.
    """
    if aspect_ratio not in CANVAS_SIZES:
        raise ValueError(f"Unknown aspect ratio: {aspect_ratio}")
    width, height = CANVAS_SIZES[aspect_ratio]

    sprites = []
    for i, c in enumerate(characters):
        try:
            sprites.append(image_bytes_to_pil(c.data))
        except (OSError, ValueError, MemoryError, Image.DecompressionBombError) as e:
            name = c.filename or f"#{i + 1}"
            raise CompositeError(f"Could not load character image {name}: {e}") from e

    try:
        canvas = Image.new("RGB", (width, height), BACKGROUND_COLOR)
    except (MemoryError, ValueError) as e:
        raise CompositeError(f"Could not acquire a drawing surface: {e}") from e

    total = len(sprites)
    if total:
        section_w = width / total
        for index, img in enumerate(sprites):
            scale = min(section_w * CHARACTER_FILL / img.width,
                        height * CHARACTER_FILL / img.height)
            iw = max(1, round(img.width * scale))
            ih = max(1, round(img.height * scale))
            resized = img.resize((iw, ih), resample=Image.LANCZOS)
            px = round(section_w * index + (section_w - iw) / 2)
            py = round((height - ih) / 2)
            canvas.paste(resized, (px, py), resized)

    png = pil_to_png_bytes(canvas)
    return CompositeImage(data=base64.b64encode(png).decode("utf-8"), mime_type="image/png")

# --- Simple prompt logger (stdout + file) ---


class PromptLogger:
    def __init__(self, out_file: Optional[Path] = None):
        self.out_file = out_file
        self.lines: List[str] = []

    def log(self, title: str, content: str):
        block = f"\n===== {title} =====\n{content.strip()}\n"
        self.lines.append(block)
        if PRINT_PROMPTS:
            print(block)

    def flush(self):
        if self.out_file is None:
            return
        self.out_file.write_text("".join(self.lines), encoding="utf-8")

# ------------------ GENAI WRAPPER ----------------


def parse_scene_list(resp) -> List[str]:
    """Read the structured list from a split response, falling back to the raw text."""
    parsed = getattr(resp, "parsed", None)
    if parsed is None:
        text = getattr(resp, "text", None) or ""
        try:
            parsed = json.loads(first_json_block(text))
        except ValueError as e:
            raise GenerationError(
                "Malformed AI response: the story split returned no JSON list.") from e
    if not isinstance(parsed, list) or not parsed:
        raise GenerationError(
            "Malformed AI response: expected a non-empty list of scene descriptions.")
    return [str(s).strip() for s in parsed]


def normalize_scenes(scenes: Sequence[str], count: int = PANEL_COUNT) -> List[str]:
    out = list(scenes[:count])
    while len(out) < count:
        out.append(PLACEHOLDER_SCENE)
    return out


def first_inline_image(resp) -> Optional[GeneratedImage]:
    for c in getattr(resp, "candidates", None) or []:
        content = getattr(c, "content", None)
        for p in getattr(content, "parts", None) or []:
            inline = getattr(p, "inline_data", None)
            if inline is None or not getattr(inline, "data", None):
                continue
            data = inline.data
            if isinstance(data, str):
                data = base64.b64decode(data)
            return GeneratedImage(data=data, mime_type=inline.mime_type or "image/png")
    return None


class StoryAIClient:
    """
    Wraps the two external calls: story splitting and panel rendering.

    Both calls are single-shot. Nothing is retried and no timeout is imposed
    on top of the SDK's own.
    """

    def __init__(self, api_key: Optional[str] = None, client=None,
                 image_backend: Optional[str] = None, logger: Optional[PromptLogger] = None,
                 text_model: str = PLANNING_MODEL, image_model: str = IMAGE_MODEL):
        self.image_backend = (image_backend or IMAGE_BACKEND).lower()
        if self.image_backend not in {"gemini", "fal"}:
            raise ConfigurationError(f"Unknown IMAGE_BACKEND: {self.image_backend}")
        if client is None:
            client = genai.Client(api_key=api_key or get_api_key())
        if self.image_backend == "fal":
            configure_fal()
        self.client = client
        self.logger = logger or PromptLogger()
        self.text_model = text_model
        self.image_model = image_model

    def split_story(self, story: str) -> List[str]:
        """Split a narrative into exactly four scene descriptions."""
        prompt = fill(STORY_SPLIT_TEMPLATE, story=story)
        self.logger.log("STORY_SPLIT_PROMPT", prompt)
        try:
            resp = self.client.models.generate_content(
                model=self.text_model,
                contents=prompt,
                config={
                    "response_mime_type": "application/json",
                    "response_schema": List[str],
                }
            )
        except Exception as e:
            print(f"[ERROR] Story split call failed: {e}")
            raise GenerationError(SPLIT_FAILED_MESSAGE) from e

        scenes = parse_scene_list(resp)
        self.logger.log("STORY_SPLIT_RESPONSE", json.dumps(scenes, ensure_ascii=False))
        return normalize_scenes(scenes)

    def generate_panel_image(self, composite: CompositeImage, scene_description: str) -> GeneratedImage:
        """Redraw the composite as a finished panel for one scene."""
        prompt = fill(PANEL_IMAGE_TEMPLATE, scene=scene_description)
        self.logger.log("PANEL_IMAGE_PROMPT", prompt)
        try:
            if self.image_backend == "fal":
                image = self._edit_with_fal(composite, prompt)
            else:
                image = self._edit_with_gemini(composite, prompt)
        except GenerationError:
            raise
        except Exception as e:
            print(f"[ERROR] Panel image call failed: {e}")
            raise GenerationError(PANEL_FAILED_MESSAGE) from e

        self.logger.log("PANEL_IMAGE_RESPONSE", f"{image.mime_type}, {len(image.data)} bytes")
        return image

    def _edit_with_gemini(self, composite: CompositeImage, prompt: str) -> GeneratedImage:
        resp = self.client.models.generate_content(
            model=self.image_model,
            contents=[
                types.Part.from_bytes(data=composite.raw, mime_type=composite.mime_type),
                prompt,
            ],
            config=types.GenerateContentConfig(response_modalities=["IMAGE", "TEXT"]),
        )
        image = first_inline_image(resp)
        if image is None:
            raise GenerationError(NO_IMAGE_MESSAGE)
        return image

    def _edit_with_fal(self, composite: CompositeImage, prompt: str) -> GeneratedImage:
        result = fal_client.subscribe(
            FAL_EDIT_ENDPOINT,
            arguments={
                "prompt": prompt,
                "image_urls": [f"data:{composite.mime_type};base64,{composite.data}"],
                "num_images": 1,
                "output_format": "png"
            },
            with_logs=True,
        )
        images = (result or {}).get("images") or []
        if not images:
            raise GenerationError(NO_IMAGE_MESSAGE)

        response = requests.get(images[0]["url"])
        if response.status_code != 200:
            raise GenerationError(
                f"Failed to download image from Fal: {response.status_code}")
        mime = response.headers.get("content-type", "image/png").split(";")[0]
        return GeneratedImage(data=response.content, mime_type=mime)

# ------------------ PANEL STATE ------------------

EventCallback = Callable[[Dict[str, Any]], None]


class StoryboardSession:
    """
    Owns the four panels and drives generation.

    A full-story run splits the story, then renders the panels one at a time
    in order and stops at the first failure. Regenerating a single panel skips
    the split. Every failure lands in ``error``, the shared error slot.
    """

    def __init__(self, client: Optional[StoryAIClient] = None,
                 aspect_ratio: AspectRatio = DEFAULT_ASPECT_RATIO,
                 on_event: Optional[EventCallback] = None,
                 compositor: Callable[..., CompositeImage] = composite_characters):
        if aspect_ratio not in CANVAS_SIZES:
            raise ValueError(f"Unknown aspect ratio: {aspect_ratio}")
        self._client = client
        self.compositor = compositor
        self.on_event = on_event
        self.story = ""
        self.aspect_ratio: AspectRatio = aspect_ratio
        self.panels: List[Panel] = [Panel() for _ in range(PANEL_COUNT)]
        self.loading = False
        self.error: Optional[str] = None
        self.generation_attempted = False
        self._lock = threading.RLock()

    @property
    def client(self) -> StoryAIClient:
        """Built on first use; raises ConfigurationError without a valid key."""
        if self._client is None:
            self._client = StoryAIClient()
        return self._client

    # --- input editing ---

    def panel(self, index: int) -> Panel:
        if not 0 <= index < PANEL_COUNT:
            raise IndexError(f"Panel index out of range: {index}")
        return self.panels[index]

    def set_story(self, story: str) -> None:
        with self._lock:
            self.story = story

    def set_panel_story(self, index: int, story: str) -> None:
        with self._lock:
            self.panel(index).story = story

    def set_aspect_ratio(self, aspect_ratio: AspectRatio) -> None:
        if aspect_ratio not in CANVAS_SIZES:
            raise ValueError(f"Unknown aspect ratio: {aspect_ratio}")
        with self._lock:
            self.aspect_ratio = aspect_ratio

    def add_characters(self, index: int, refs: Sequence[CharacterRef]) -> int:
        """Append references to a panel, keeping at most two. Returns how many were kept."""
        with self._lock:
            p = self.panel(index)
            before = len(p.characters)
            p.characters = (p.characters + list(refs))[:MAX_CHARACTERS]
            return len(p.characters) - before

    def remove_character(self, index: int, char_index: int) -> CharacterRef:
        with self._lock:
            p = self.panel(index)
            if not 0 <= char_index < len(p.characters):
                raise IndexError(f"Character index out of range: {char_index}")
            return p.characters.pop(char_index)

    def can_regenerate(self, index: int) -> bool:
        p = self.panel(index)
        return bool(p.story.strip()) and not self.loading and not p.is_generating

    # --- generation ---

    def generate_story(self, story: str) -> bool:
        """
        Split the story and render all four panels in order.

        Returns False when the run stopped early; the reason is in ``error``.
        Panels after a failing one are left untouched.
        """
        if not story or not story.strip():
            self._set_error("Please provide a story.")
            raise ValueError(self.error)
        with self._lock:
            if self.loading:
                raise SessionBusyError("A story is already being generated.")
            self.story = story
            self.loading = True
            self.error = None
            self.generation_attempted = True

        try:
            print(">> Splitting story into panels...")
            try:
                scenes = self.client.split_story(story)
            except (GenerationError, ConfigurationError) as e:
                self._set_error(str(e))
                raise
            with self._lock:
                for p, scene in zip(self.panels, scenes):
                    p.story = scene
            print(f"   ✓ Scenes: {scenes}")
            self._emit({"type": "split_complete", "scenes": scenes})

            for index in range(PANEL_COUNT):
                self.run_generation(index)
        except (GenerationError, CompositeError, ConfigurationError) as e:
            print(f"[ERROR] Stopping generation due to an error: {e}")
            self._emit({"type": "error", "message": self.error})
            if isinstance(e, ConfigurationError):
                raise
            return False
        finally:
            with self._lock:
                self.loading = False
            self._emit({"type": "done"})

        print(">> Done. All panels generated.")
        return True

    def validate_regenerate(self, index: int) -> None:
        p = self.panel(index)
        if not p.story.strip():
            self._set_error(f"Please provide a story for Panel {index + 1} before regenerating.")
            raise ValueError(self.error)
        if self.loading or p.is_generating:
            raise SessionBusyError(f"Panel {index + 1} is already being generated.")

    def regenerate_panel(self, index: int) -> bool:
        """Re-render one panel from its current narrative and characters."""
        self.validate_regenerate(index)
        with self._lock:
            self.error = None
        try:
            self.run_generation(index)
        except (GenerationError, CompositeError):
            return False
        finally:
            self._emit({"type": "done", "panel": index + 1})
        return True

    def run_generation(self, index: int) -> GeneratedImage:
        """Composite and render one panel. Failures are recorded, then re-raised."""
        p = self.panel(index)
        with self._lock:
            p.is_generating = True
            p.image = None
            story = p.story
            characters = list(p.characters)
            aspect_ratio = self.aspect_ratio
        self._emit({"type": "panel_started", "panel": index + 1})
        print(f">> Rendering panel {index + 1} ({len(characters)} character(s), {aspect_ratio})...")

        try:
            composite = self.compositor(characters, aspect_ratio)
            image = self.client.generate_panel_image(composite, story)
        except (GenerationError, CompositeError, ConfigurationError) as e:
            message = f"Panel {index + 1} Error: {e}"
            print(f"   ! {message}")
            self._set_error(message)
            self._emit({"type": "panel_error", "panel": index + 1, "message": message})
            raise
        finally:
            with self._lock:
                p.is_generating = False

        with self._lock:
            p.image = image
        print(f"   ✓ Panel {index + 1} -> {image.mime_type}, {len(image.data)} bytes")
        self._emit({"type": "panel_done", "panel": index + 1})
        return image

    # --- output ---

    def download_panel(self, index: int, dest_dir: Path) -> Path:
        """Write a panel's image as storytoon-panel-<N>.png into dest_dir."""
        p = self.panel(index)
        if p.image is None:
            raise ValueError(f"Panel {index + 1} has no image to download.")
        ensure_dir(dest_dir)
        out = Path(dest_dir) / panel_filename(index)
        out.write_bytes(p.image.to_png_bytes())
        return out

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "story": self.story,
                "aspect_ratio": self.aspect_ratio,
                "loading": self.loading,
                "error": self.error,
                "generation_attempted": self.generation_attempted,
                "panels": [
                    {
                        "index": i + 1,
                        "story": p.story,
                        "image": p.image.data_uri if p.image else None,
                        "characters": [c.preview for c in p.characters],
                        "is_generating": p.is_generating,
                        "can_regenerate": self.can_regenerate(i),
                    }
                    for i, p in enumerate(self.panels)
                ],
            }

    def _set_error(self, message: str) -> None:
        with self._lock:
            self.error = message

    def _emit(self, event: Dict[str, Any]) -> None:
        if self.on_event is not None:
            self.on_event(event)

# ------------------ MAIN ORCHESTRATION -----------
DEMO_STORY = "A robot chef bakes a cake that floats away."


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="storytoon",
        description="Turn a short story into a 4-panel webtoon with Gemini",
    )
    parser.add_argument("story", nargs="?", type=Path, default=None,
                        help="Text file with the story (default: a short demo story)")
    parser.add_argument("-c", "--character", action="append", type=Path, default=[],
                        help="Character reference image (PNG/JPEG), used in every panel; at most 2")
    parser.add_argument("-a", "--aspect-ratio", choices=sorted(CANVAS_SIZES), default=DEFAULT_ASPECT_RATIO,
                        help="Panel aspect ratio (default: 16:9)")
    parser.add_argument("-o", "--out", type=Path, default=None,
                        help="Output directory (default: output/<story-slug>-<run id>)")
    args = parser.parse_args(argv)
    if args.story is not None and not args.story.is_file():
        parser.error(f"story file not found: {args.story}")
    return args


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    if args.story is not None:
        story_text = args.story.read_text(encoding="utf-8")
        slug = slugify(args.story.stem)
    else:
        print("No input file given; using DEMO_STORY.")
        story_text = DEMO_STORY
        slug = "demo-story"

    run_id = "".join(random.choices(string.ascii_lowercase + string.digits, k=6))
    out_dir = args.out or OUTPUT_DIR / f"{slug}-{run_id}"
    ensure_dir(out_dir)
    logger = PromptLogger(out_dir / "prompts_used.txt")

    try:
        refs = [CharacterRef.from_path(p) for p in args.character[:MAX_CHARACTERS]]
        session = StoryboardSession(client=StoryAIClient(logger=logger), aspect_ratio=args.aspect_ratio)
    except (ConfigurationError, ValueError, OSError) as e:
        print(f"[ERROR] {e}", file=sys.stderr)
        return 2

    if len(args.character) > MAX_CHARACTERS:
        print(f"   ! Only the first {MAX_CHARACTERS} character images are used.")
    for index in range(PANEL_COUNT):
        session.add_characters(index, refs)

    try:
        ok = session.generate_story(story_text)
    except ValueError as e:
        print(f"[ERROR] {e}", file=sys.stderr)
        return 2
    finally:
        logger.flush()

    for index, p in enumerate(session.panels):
        if p.image is not None:
            path = session.download_panel(index, out_dir)
            print(f"   ✓ Panel {index + 1} -> {path}")

    if not ok:
        print(f"[ERROR] {session.error}", file=sys.stderr)
        return 1
    print(f">> Done. Output at: {out_dir}")
    return 0


# ------------------ CLI -------------------------
if __name__ == "__main__":
    sys.exit(main())
