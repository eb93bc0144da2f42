import mimetypes
import os

import aiofiles

from scribeline.errors import AudioNotFoundError, ValidationFailure
from scribeline.observability.logger import get_logger

log = get_logger("audio_store")


class AudioFile:
    def __init__(self, name: str, data: bytes, mime_type: str):
        self.name = name
        self.data = data
        self.mime_type = mime_type

    @property
    def size(self) -> int:
        return len(self.data)


class AudioStore:
    """Resolves storage references (paths relative to a root) to audio bytes."""

    def __init__(self, root: str):
        self.root = os.path.abspath(root)

    def _path_for(self, ref: str) -> str:
        path = os.path.abspath(os.path.join(self.root, ref))
        if os.path.commonpath([path, self.root]) != self.root:
            raise ValidationFailure(f"Storage reference escapes the audio root: {ref}")
        return path

    async def exists(self, ref: str) -> bool:
        return os.path.isfile(self._path_for(ref))

    async def load(self, ref: str) -> AudioFile:
        path = self._path_for(ref)
        if not os.path.isfile(path):
            raise AudioNotFoundError(f"Audio file not found: {ref}")
        async with aiofiles.open(path, "rb") as f:
            data = await f.read()
        mime_type = mimetypes.guess_type(path)[0] or "audio/mpeg"
        log.info("audio_loaded", ref=ref, size=len(data), mime_type=mime_type)
        return AudioFile(name=os.path.basename(path), data=data, mime_type=mime_type)

    async def save(self, ref: str, data: bytes) -> str:
        path = self._path_for(ref)
        os.makedirs(os.path.dirname(path), exist_ok=True)
        async with aiofiles.open(path, "wb") as f:
            await f.write(data)
        return ref
