"""Audio storage: durable call uploads and transient synthesized utterances."""
from storage.content_store import (
    ContentStore, UtteranceAudioStore, StorageError,
    AUDIO_EXTENSIONS, content_hash, extension_of, mime_type_for, object_key,
)

__all__ = [
    "ContentStore", "UtteranceAudioStore", "StorageError",
    "AUDIO_EXTENSIONS", "content_hash", "extension_of", "mime_type_for", "object_key",
]
