from __future__ import annotations

import subprocess
from contextlib import suppress
from pathlib import Path

from longform_tts.utils.log import logger

_FORBIDDEN_FLAGS = {
    "-filter_script",
    "-filter_script:v",
    "-filter_script:a",
    "-stats_file",
}

# target format -> encoder args
_CODECS: dict[str, list[str]] = {
    "mp3": ["-codec:a", "libmp3lame", "-qscale:a", "2"],
    "ogg": ["-codec:a", "libvorbis", "-qscale:a", "5"],
    "flac": ["-codec:a", "flac"],
    "wav": ["-codec:a", "pcm_s16le"],
}


class FFmpegError(RuntimeError):
    pass


def _validate_args(argv: list[str]) -> None:
    for a in argv:
        if a in _FORBIDDEN_FLAGS:
            raise FFmpegError(f"Forbidden ffmpeg flag: {a}")


def _tail(s: str, n: int = 4000) -> str:
    s = str(s or "")
    if len(s) <= n:
        return s
    return s[-n:]


def run_ffmpeg(
    argv: list[str],
    *,
    timeout_s: int | None = None,
    retries: int = 0,
) -> subprocess.CompletedProcess[str]:
    _validate_args(argv)
    last_ex: Exception | None = None
    for attempt in range(int(retries) + 1):
        try:
            return subprocess.run(
                argv,
                check=True,
                capture_output=True,
                text=True,
                timeout=timeout_s,
            )
        except subprocess.TimeoutExpired as ex:
            last_ex = ex
            if attempt >= int(retries):
                raise FFmpegError(f"ffmpeg timed out after {timeout_s}s") from ex
        except subprocess.CalledProcessError as ex:
            last_ex = ex
            if attempt >= int(retries):
                raise FFmpegError(
                    "ffmpeg failed "
                    f"(exit={ex.returncode})\n"
                    f"argv={argv}\n"
                    f"stderr_tail={_tail(ex.stderr)}"
                ) from ex
        except OSError as ex:
            last_ex = ex
            if attempt >= int(retries):
                raise FFmpegError(f"ffmpeg failed: {ex} (argv={argv})") from ex
    raise FFmpegError(f"ffmpeg failed: {last_ex} (argv={argv})")


class FfmpegTranscoder:
    """
    Best-effort local transcode: returns False instead of raising so a failed
    conversion never fails the job.
    """

    def __init__(self, ffmpeg_bin: str = "ffmpeg", *, timeout_s: int = 30 * 60) -> None:
        self.ffmpeg_bin = str(ffmpeg_bin)
        self.timeout_s = int(timeout_s)

    def build_argv(self, src: Path, dst: Path, target_format: str) -> list[str]:
        fmt = str(target_format).lower().lstrip(".")
        codec = _CODECS.get(fmt)
        if codec is None:
            raise FFmpegError(f"Unsupported target format: {target_format}")
        return [self.ffmpeg_bin, "-y", "-hide_banner", "-i", str(src), *codec, str(dst)]

    def transcode(self, src: Path, dst: Path, target_format: str) -> bool:
        try:
            argv = self.build_argv(Path(src), Path(dst), target_format)
            run_ffmpeg(argv, timeout_s=self.timeout_s)
        except FFmpegError as ex:
            logger.warning("transcode_failed", src=str(src), dst=str(dst), error=str(ex))
            with suppress(OSError):
                Path(dst).unlink(missing_ok=True)
            return False
        ok = Path(dst).is_file() and Path(dst).stat().st_size > 0
        if not ok:
            logger.warning("transcode_empty_output", src=str(src), dst=str(dst))
        return ok
