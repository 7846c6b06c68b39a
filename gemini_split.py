"""Ground-truth split labels from a Gemini vision model.

The oracle looks at the full image and decides whether it is a two-page
spread, and if so where to cut it.  Its answers are only used to build the
training set for the fast model in split_model.py; nothing at prediction time
calls it.

Because the answers are ground truth there is no fallback: a response without
a well-formed JSON object raises OracleResponseError.  Rate-limit errors are
reported to the key pool (so the key is rested) and re-raised unchanged; the
caller owns retry and backoff.

Response contract
-----------------
    {
      "isTwoPageSpread": true,
      "splitPosition": 507,          # 0–1000 permille of image width
      "confidence": "high",          # high | medium | low
      "reasoning": "Dark binding shadow at centre, text blocks symmetric."
    }
"""

import json
import math
import mimetypes
import os
from pathlib import Path

import requests
from dotenv import load_dotenv
from google import genai
from google.genai.types import GenerateContentConfig, Part

from column_profile import round_half_up
from gemini_keys import ApiKeyPool

load_dotenv()

DEFAULT_MODEL = os.environ.get("GEMINI_MODEL", "gemini-2.0-flash")
FETCH_TIMEOUT = 30
CONFIDENCE_LEVELS = ("high", "medium", "low")

SPLIT_PROMPT = """You are an expert at analyzing scanned book images.

TASK: Decide whether this image is a TWO-PAGE SPREAD or a SINGLE PAGE. If it is
a spread, find the best vertical line along which to split it into two pages.

STEP 1: IMAGE TYPE
Signs of a two-page spread:
  - Two distinct text blocks separated by a gutter (dark shadow or light gap)
  - Symmetrical layout with text on both sides
  - A central binding line (vertical line or shadow near the middle)
  - Wider than tall (aspect ratio usually above 1.0)
Signs of a single page:
  - One continuous text column
  - Portrait orientation
  - No central gutter or binding line
  - Text flows across the middle without a vertical gap

STEP 2: SPLIT POSITION (spreads only)
  - Give the split as an integer from 0 (left edge) to 1000 (right edge)
  - NEVER cut through text; the line must fall in the gap between text blocks
  - Follow the binding if the book is slightly tilted
  - The gutter may be a dark shadow, a bright gap, or just the margin between
    text blocks

Answer with exactly this JSON object and nothing else:
{
  "isTwoPageSpread": <true|false>,
  "splitPosition": <integer 0-1000, or 500 for a single page>,
  "confidence": "<high|medium|low>",
  "reasoning": "<brief explanation>"
}"""


class OracleResponseError(ValueError):
    """The oracle's reply could not be read as a split judgment."""


def is_rate_limit_error(exc: BaseException) -> bool:
    if getattr(exc, "code", None) == 429:
        return True
    text = str(exc).lower()
    return "429" in text or "rate limit" in text or "resource_exhausted" in text


# ---------------------------------------------------------------------------
# Response parsing
# ---------------------------------------------------------------------------

def _first_json_object(text: str) -> dict | None:
    decoder = json.JSONDecoder()
    start = text.find("{")
    while start != -1:
        try:
            obj, _ = decoder.raw_decode(text, start)
        except json.JSONDecodeError:
            obj = None
        if isinstance(obj, dict):
            return obj
        start = text.find("{", start + 1)
    return None


def parse_split_response(text: str) -> dict:
    """
    Read the first well-formed JSON object out of a model reply.

    Markdown fences and surrounding prose are tolerated.  Raises
    OracleResponseError when there is no object or no numeric splitPosition.
    """
    text = text or ""
    obj = _first_json_object(text)
    if obj is None:
        raise OracleResponseError(f"Could not parse oracle response as JSON: {text[:200]!r}")

    raw_position = obj.get("splitPosition")
    if isinstance(raw_position, bool) or not isinstance(raw_position, (int, float)):
        try:
            raw_position = float(raw_position)
        except (TypeError, ValueError):
            raise OracleResponseError(f"splitPosition is not a number: {raw_position!r}") from None
    if not math.isfinite(raw_position):
        raise OracleResponseError(f"splitPosition is not finite: {raw_position!r}")
    position = max(0, min(1000, round_half_up(raw_position)))

    confidence = str(obj.get("confidence") or "medium").lower()
    if confidence not in CONFIDENCE_LEVELS:
        confidence = "medium"

    spread = obj.get("isTwoPageSpread", True)
    if isinstance(spread, str):
        spread = spread.strip().lower() == "true"

    return {
        "is_two_page_spread": bool(spread),
        "split_position": position,
        "confidence": confidence,
        "reasoning": str(obj.get("reasoning") or ""),
    }


# ---------------------------------------------------------------------------
# Gemini API
# ---------------------------------------------------------------------------

def _image_part(image) -> Part:
    """Wrap a path, URL or raw bytes as an inline image part."""
    if isinstance(image, (bytes, bytearray)):
        return Part.from_bytes(data=bytes(image), mime_type="image/jpeg")
    if isinstance(image, str) and image.startswith(("http://", "https://")):
        resp = requests.get(image, timeout=FETCH_TIMEOUT)
        resp.raise_for_status()
        mime = resp.headers.get("Content-Type", "").split(";")[0] or "image/jpeg"
        return Part.from_bytes(data=resp.content, mime_type=mime)
    path = Path(image)
    mime = mimetypes.guess_type(path.name)[0] or "image/jpeg"
    return Part.from_bytes(data=path.read_bytes(), mime_type=mime)


def detect_split_with_gemini(
    image,
    client: genai.Client | None = None,
    model: str = DEFAULT_MODEL,
    key_pool: ApiKeyPool | None = None,
    api_key: str = "",
) -> dict:
    """
    Ask Gemini for a spread / split-position judgment on one image.

    When no client is given one is built from key_pool (or a fresh pool read
    from the environment).  api_key names the key behind an explicit client so
    rate limits can be reported against it.

    Returns the dict produced by parse_split_response().
    """
    if client is None:
        key_pool = key_pool or ApiKeyPool()
        client, api_key = key_pool.client()

    parts = [_image_part(image), Part.from_text(text=SPLIT_PROMPT)]
    try:
        response = client.models.generate_content(
            model=model,
            config=GenerateContentConfig(temperature=0.0),
            contents=parts,
        )
    except Exception as exc:
        if key_pool is not None and api_key and is_rate_limit_error(exc):
            key_pool.report_rate_limit(api_key)
        raise

    return parse_split_response(response.text or "")
