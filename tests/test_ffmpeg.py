from __future__ import annotations

from pathlib import Path

import pytest

from longform_tts.utils.ffmpeg import FFmpegError, FfmpegTranscoder, run_ffmpeg


def test_build_argv_for_mp3(tmp_path: Path) -> None:
    t = FfmpegTranscoder("ffmpeg")
    argv = t.build_argv(tmp_path / "a.wav", tmp_path / "a.mp3", "mp3")
    assert argv[0] == "ffmpeg"
    assert "libmp3lame" in argv
    assert argv[-1] == str(tmp_path / "a.mp3")


def test_unsupported_format_fails_softly(tmp_path: Path) -> None:
    src = tmp_path / "a.wav"
    src.write_bytes(b"RIFF")
    assert FfmpegTranscoder("ffmpeg").transcode(src, tmp_path / "a.xyz", "xyz") is False


def test_missing_binary_fails_softly(tmp_path: Path) -> None:
    src = tmp_path / "a.wav"
    src.write_bytes(b"RIFF")
    dst = tmp_path / "a.mp3"
    t = FfmpegTranscoder(str(tmp_path / "no-such-ffmpeg"))
    assert t.transcode(src, dst, "mp3") is False
    assert not dst.exists()


def test_forbidden_flags_rejected() -> None:
    with pytest.raises(FFmpegError):
        run_ffmpeg(["ffmpeg", "-filter_script", "x"], timeout_s=1)
