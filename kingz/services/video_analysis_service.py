"""
Video analysis for 1v1 matches using Google Gemini.

This service handles:
- Upload validation (MIME type, size)
- Uploading the stored match video to the Gemini File API
- Prompting for a score/shot breakdown and parsing the JSON reply

The model is treated as an unreliable oracle: callers must cope with
exceptions and with a None result (oracle not configured).
"""

import asyncio
import io
import json
import logging
import mimetypes
import os
import re
import time
from typing import Any, Dict, Optional, Tuple

from kingz.services import storage_service
from kingz.utils.constants import MAX_VIDEO_SIZE_BYTES

logger = logging.getLogger(__name__)

# Configuration
GEMINI_API_KEY = os.getenv("GEMINI_API_KEY") or os.getenv("GOOGLE_API_KEY")
VIDEO_ANALYSIS_MODEL = "gemini-2.0-flash"
FILE_PROCESSING_TIMEOUT_SEC = 120
FILE_PROCESSING_POLL_SEC = 2

# Gemini client (singleton); type is Any to allow lazy import
_gemini_client: Any = None

MATCH_ANALYSIS_PROMPT = """You are a sports video analyst reviewing a 1v1 basketball match.

Watch and listen to the whole video. Use the sound of the ball (clean swish vs. rim
clank) and the movement of the net to decide whether each shot went in.

There are two players. Player 1 is the one who appears first or starts with the ball;
Player 2 is the opponent. Track every shot attempt for each player separately. A made
shot inside the arc is worth 2 points, outside the arc 3 points.

Return ONLY a JSON object with exactly these keys and no other text:

{
  "player1Score": <total points for player 1>,
  "player2Score": <total points for player 2>,
  "player1ShotsMade": <made shots by player 1>,
  "player1ShotsAttempted": <shot attempts by player 1>,
  "player2ShotsMade": <made shots by player 2>,
  "player2ShotsAttempted": <shot attempts by player 2>,
  "durationSeconds": <approximate video duration in seconds>,
  "confidence": <number between 0 and 1>
}"""


def get_gemini_client():
    """Get or create Gemini client. Lazy-imports google.genai to avoid import-time dependency."""
    global _gemini_client
    if _gemini_client is None:
        if not GEMINI_API_KEY:
            raise ValueError("GEMINI_API_KEY or GOOGLE_API_KEY environment variable is not set")
        from google import genai
        _gemini_client = genai.Client(api_key=GEMINI_API_KEY)
    return _gemini_client


def is_gemini_configured() -> bool:
    return bool(GEMINI_API_KEY)


# ============================================================================
# Upload validation
# ============================================================================

def validate_video_file(file_size: int, content_type: str) -> Tuple[bool, str]:
    """
    Validate an uploaded match video.

    Args:
        file_size: Size of the upload in bytes
        content_type: MIME type from upload

    Returns:
        Tuple of (is_valid, error_message)
    """
    if not (content_type or "").lower().startswith("video/"):
        return False, "Invalid file type. Must be a video."

    if file_size > MAX_VIDEO_SIZE_BYTES:
        return False, f"Video too large. Max {MAX_VIDEO_SIZE_BYTES // (1024 * 1024)}MB."

    if file_size == 0:
        return False, "Video file is empty"

    return True, ""


# ============================================================================
# Response parsing
# ============================================================================

def parse_analysis_response(response_text: str) -> Dict[str, Any]:
    """
    Extract the JSON object from a model reply.

    Accepts bare JSON, a fenced ```json block, or a JSON object embedded in prose.

    Raises:
        ValueError: If no JSON object can be parsed
    """
    if not response_text:
        raise ValueError("Empty response from Gemini")

    response_text = response_text.strip()

    try:
        parsed = json.loads(response_text)
        if isinstance(parsed, dict):
            return parsed
    except json.JSONDecodeError:
        pass

    fenced = re.search(r'```(?:json)?\s*\n?([\s\S]*?)\n?\s*```', response_text)
    if fenced:
        try:
            parsed = json.loads(fenced.group(1).strip())
            if isinstance(parsed, dict):
                return parsed
        except json.JSONDecodeError:
            pass

    # Outermost {...} by brace depth
    brace_start = response_text.find('{')
    if brace_start != -1:
        depth = 0
        for i, char in enumerate(response_text[brace_start:], start=brace_start):
            if char == '{':
                depth += 1
            elif char == '}':
                depth -= 1
                if depth == 0:
                    try:
                        return json.loads(response_text[brace_start:i + 1])
                    except json.JSONDecodeError:
                        break

    raise ValueError("Could not parse JSON from response")


def _non_negative_int(data: Dict[str, Any], key: str, required: bool) -> Optional[int]:
    value = data.get(key)
    if value is None:
        if required:
            raise ValueError(f"Missing {key} in analysis")
        return None
    if isinstance(value, bool):
        raise ValueError(f"Invalid {key}: {value!r}")
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    if not isinstance(value, int) or value < 0:
        raise ValueError(f"Invalid {key}: {value!r}")
    return value


def normalize_analysis(data: Dict[str, Any]) -> Dict[str, Any]:
    """
    Validate a parsed model reply and convert it to snake_case.

    Scores must be non-negative integers; shot counts and duration are optional.
    Confidence is clamped to [0, 1].

    Raises:
        ValueError: On missing, negative or non-integer scores
    """
    confidence = data.get("confidence")
    try:
        confidence = min(max(float(confidence), 0.0), 1.0) if confidence is not None else None
    except (TypeError, ValueError):
        confidence = None

    return {
        "player1_score": _non_negative_int(data, "player1Score", required=True),
        "player2_score": _non_negative_int(data, "player2Score", required=True),
        "player1_shots_made": _non_negative_int(data, "player1ShotsMade", required=False),
        "player1_shots_attempted": _non_negative_int(data, "player1ShotsAttempted", required=False),
        "player2_shots_made": _non_negative_int(data, "player2ShotsMade", required=False),
        "player2_shots_attempted": _non_negative_int(data, "player2ShotsAttempted", required=False),
        "duration_seconds": _non_negative_int(data, "durationSeconds", required=False),
        "confidence": confidence,
    }


# ============================================================================
# Gemini call
# ============================================================================

def _run_gemini_analysis(video_bytes: bytes, mime_type: str) -> str:
    """Blocking: upload the video to the File API, wait until it is processed, prompt, return text."""
    from google.genai import types

    client = get_gemini_client()
    uploaded = client.files.upload(
        file=io.BytesIO(video_bytes),
        config={"mime_type": mime_type},
    )
    logger.info(f"Video uploaded to Gemini as {uploaded.name}")

    try:
        deadline = time.monotonic() + FILE_PROCESSING_TIMEOUT_SEC
        while uploaded.state == types.FileState.PROCESSING:
            if time.monotonic() > deadline:
                raise TimeoutError(f"Gemini file {uploaded.name} still processing")
            time.sleep(FILE_PROCESSING_POLL_SEC)
            uploaded = client.files.get(name=uploaded.name)
        if uploaded.state == types.FileState.FAILED:
            raise RuntimeError(f"Gemini failed to process file {uploaded.name}")

        response = client.models.generate_content(
            model=VIDEO_ANALYSIS_MODEL,
            contents=[uploaded, MATCH_ANALYSIS_PROMPT],
        )
        return response.text or ""
    finally:
        try:
            client.files.delete(name=uploaded.name)
        except Exception as e:
            logger.warning(f"Could not delete Gemini file {uploaded.name}: {e}")


async def analyze_match_video(video_url: str) -> Optional[Dict[str, Any]]:
    """
    Score a stored match video.

    Returns:
        Normalised analysis dict (scores, shot counts, confidence, raw_response),
        or None when Gemini is not configured

    Raises:
        Any storage, Gemini or parsing error; the analysis queue retries these.
    """
    if not is_gemini_configured():
        logger.warning("GEMINI_API_KEY not configured, match video cannot be analyzed")
        return None

    mime_type = mimetypes.guess_type(video_url)[0] or "video/mp4"
    video_bytes = await asyncio.to_thread(storage_service.download_file, video_url)
    logger.info(f"Analyzing match video {video_url} ({len(video_bytes)} bytes, {mime_type})")

    raw_text = await asyncio.to_thread(_run_gemini_analysis, video_bytes, mime_type)
    logger.info(f"Received Gemini response: {raw_text[:500]}")

    analysis = normalize_analysis(parse_analysis_response(raw_text))
    analysis["raw_response"] = raw_text
    return analysis
