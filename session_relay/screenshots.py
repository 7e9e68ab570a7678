"""
Screenshot Store.

Persists proctoring screenshots sent over the relay to the filesystem and
lists them back for the HTTP layer.

Layout:
    <root>/<interview_id>/<user_id>/screenshot-<timestamp>.png

Every path component is percent-encoded. The encoding is reversible, so
distinct ids and timestamps always map to distinct paths, and a
client-supplied id can never escape the root directory.

Last Grunted: 10/19/2026
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from urllib.parse import quote, unquote

import aiofiles


__all__ = [
    "ScreenshotStore",
    "ScreenshotInfo",
    "ScreenshotWriteError",
    "ScreenshotReadError",
    "encode_component",
    "decode_component",
]


logger = logging.getLogger(__name__)

SCREENSHOT_PREFIX = "screenshot-"
SCREENSHOT_SUFFIX = ".png"
_RESERVED_NAMES = {".", ".."}


class ScreenshotWriteError(Exception):
    """Raised when writing a screenshot fails."""

    def __init__(self, path: Path, cause: Exception) -> None:
        self.path = path
        self.cause = cause
        super().__init__(f"Failed to write screenshot {path}: {cause}")


class ScreenshotReadError(Exception):
    """Raised when a screenshot path cannot be resolved or read."""

    def __init__(self, path: Path, cause: Exception) -> None:
        self.path = path
        self.cause = cause
        super().__init__(f"Failed to read screenshot {path}: {cause}")


def encode_component(value: str) -> str:
    """
    Encode one id as a single path component.

    Every character outside ``[A-Za-z0-9_.~-]`` is percent-encoded, ``/``
    and ``%`` included, so :func:`decode_component` recovers the original.

    Raises:
        ValueError: If the value is blank or encodes to ``.`` or ``..``.
    """
    if not value or not value.strip():
        raise ValueError(f"Unusable path component: {value!r}")
    encoded = quote(value, safe="")
    if encoded in _RESERVED_NAMES:
        raise ValueError(f"Unusable path component: {value!r}")
    return encoded


def decode_component(encoded: str) -> str:
    return unquote(encoded)


@dataclass(frozen=True)
class ScreenshotInfo:
    """
    One stored screenshot as reported to HTTP clients.

    ``user_id`` is the decoded id; ``filename`` is the stored file name.
    """

    interview_id: str
    user_id: str
    filename: str

    @property
    def url(self) -> str:
        parts = (quote(part, safe="") for part in (self.interview_id, self.user_id, self.filename))
        return "/api/interviews/{}/screenshots/{}/{}".format(*parts)

    def to_dict(self) -> dict[str, str]:
        return {"filename": self.filename, "userId": self.user_id, "url": self.url}


class ScreenshotStore:
    """
    Writes and lists screenshot files below a root directory.

    Example:
        >>> store = ScreenshotStore(Path("./screenshots"))
        >>> path = await store.save("interview-1", "userA", "T1", b"\\x89PNG...")
        >>> store.list_screenshots("interview-1")
    """

    def __init__(self, root_dir: Path) -> None:
        self.root_dir = Path(root_dir)

    def path_for(self, interview_id: str, user_id: str, timestamp: str) -> Path:
        """
        Derive the file path for one screenshot.

        Raises:
            ValueError: If any component is blank or reserved.
        """
        return (
            self.root_dir
            / encode_component(interview_id)
            / encode_component(user_id)
            / f"{SCREENSHOT_PREFIX}{encode_component(timestamp)}{SCREENSHOT_SUFFIX}"
        )

    async def save(
        self, interview_id: str, user_id: str, timestamp: str, image: bytes
    ) -> Path:
        """
        Write one screenshot, creating parent directories first.

        Returns:
            Path to the written file.

        Raises:
            ScreenshotWriteError: If the path is invalid or the write fails.
        """
        try:
            output_path = self.path_for(interview_id, user_id, timestamp)
        except ValueError as e:
            raise ScreenshotWriteError(self.root_dir / str(interview_id), e) from e

        try:
            output_path.parent.mkdir(parents=True, exist_ok=True)
            async with aiofiles.open(output_path, "wb") as f:
                await f.write(image)
        except OSError as e:
            raise ScreenshotWriteError(output_path, e) from e

        logger.info("Saved screenshot %s (%d bytes)", output_path, len(image))
        return output_path

    def list_screenshots(self, interview_id: str) -> list[ScreenshotInfo]:
        """
        List stored screenshots for one interview.

        Returns:
            Screenshots sorted by user id, then filename. Empty when the
            interview has no directory yet.
        """
        try:
            interview_dir = self.root_dir / encode_component(interview_id)
        except ValueError:
            return []

        if not interview_dir.is_dir():
            logger.debug("No screenshot directory for interview %s", interview_id)
            return []

        found = []
        for user_dir in interview_dir.iterdir():
            if not user_dir.is_dir():
                continue
            for path in user_dir.glob(f"{SCREENSHOT_PREFIX}*{SCREENSHOT_SUFFIX}"):
                found.append(
                    ScreenshotInfo(
                        interview_id=interview_id,
                        user_id=decode_component(user_dir.name),
                        filename=path.name,
                    )
                )
        return sorted(found, key=lambda info: (info.user_id, info.filename))

    def resolve(self, interview_id: str, user_id: str, filename: str) -> Path:
        """
        Locate a stored screenshot.

        Raises:
            ScreenshotReadError: If the name is not a screenshot name or the
                file does not exist.
        """
        candidate = self.root_dir / str(interview_id) / str(user_id) / str(filename)
        try:
            path = (
                self.root_dir
                / encode_component(interview_id)
                / encode_component(user_id)
                / filename
            )
            if (
                filename != Path(filename).name
                or not filename.startswith(SCREENSHOT_PREFIX)
                or not filename.endswith(SCREENSHOT_SUFFIX)
            ):
                raise ValueError(f"Not a screenshot filename: {filename!r}")
        except ValueError as e:
            raise ScreenshotReadError(candidate, e) from e

        if not path.is_file():
            raise ScreenshotReadError(path, FileNotFoundError(str(path)))
        return path
