"""
Content Store — raw audio bytes keyed by customer and call.

Two stores live here:
  - ContentStore: durable, filesystem-backed home for uploaded call audio.
    Layout: {root}/{customer_id}/{call_id}/audio.{ext}
  - UtteranceAudioStore: short-lived in-memory home for synthesized
    utterances the carrier fetches by URL while a simulated call runs.
"""
from __future__ import annotations

import asyncio
import hashlib
import structlog
from pathlib import Path
from typing import Optional

logger = structlog.get_logger()

AUDIO_EXTENSIONS = ("mp3", "wav", "flac", "ogg", "webm", "m4a")

MIME_TYPES = {
    "mp3": "audio/mpeg",
    "wav": "audio/wav",
    "flac": "audio/flac",
    "ogg": "audio/ogg",
    "webm": "audio/webm",
    "m4a": "audio/mp4",
}


def content_hash(data: bytes) -> str:
    """SHA-256 hex digest used as the audio fingerprint."""
    return hashlib.sha256(data).hexdigest()


def object_key(customer_id: str, call_id: str, extension: str) -> str:
    """Path of the audio under the store root, laid out like a bucket."""
    return f"customers/{customer_id}/calls/{call_id}/audio.{extension}"


def extension_of(file_name: str, default: str = "mp3") -> str:
    if "." not in file_name:
        return default
    return file_name.rsplit(".", 1)[-1].lower() or default


def mime_type_for(ref: str) -> str:
    return MIME_TYPES.get(extension_of(ref), "audio/mpeg")


class StorageError(OSError):
    """Raised when audio bytes cannot be written or read."""


class ContentStore:
    """Filesystem-backed audio store. File IO runs off the event loop."""

    def __init__(self, root_dir: str = "./data/audio"):
        self.root = Path(root_dir)

    async def save(self, customer_id: str, call_id: str, data: bytes, extension: str) -> str:
        """Write bytes and return the stable reference (a path string)."""
        path = self.root / object_key(customer_id, call_id, extension)

        def _write() -> None:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)

        try:
            await asyncio.to_thread(_write)
        except OSError as e:
            raise StorageError(f"storage write failed for {call_id}: {e}") from e
        logger.info("audio_saved", call_id=call_id, bytes=len(data), ref=str(path))
        return str(path)

    async def read(self, ref: str) -> bytes:
        try:
            return await asyncio.to_thread(Path(ref).read_bytes)
        except OSError as e:
            raise StorageError(f"storage read failed for {ref}: {e}") from e

    async def delete(self, ref: str) -> None:
        """Remove a stored file; a missing file is not an error."""
        path = Path(ref)

        def _remove() -> None:
            path.unlink()
            try:
                path.parent.rmdir()
            except OSError:
                pass    # directory not empty

        try:
            await asyncio.to_thread(_remove)
        except OSError as e:
            logger.warning("audio_delete_failed", ref=ref, error=str(e))


class UtteranceAudioStore:
    """In-memory audio for synthesized utterances, served back over HTTP."""

    def __init__(self, base_url: str):
        self.base_url = base_url.rstrip("/")
        self._audio: dict[str, bytes] = {}

    def put(self, filename: str, data: bytes) -> str:
        """Store bytes and return the public URL the carrier will fetch."""
        self._audio[filename] = data
        return f"{self.base_url}/v1/test-runs/audio/{filename}"

    def get(self, filename: str) -> Optional[bytes]:
        return self._audio.get(filename)

    def discard_run(self, run_id: str) -> int:
        prefix = f"dh-{run_id}-"
        names = [n for n in self._audio if n.startswith(prefix)]
        for name in names:
            del self._audio[name]
        return len(names)
