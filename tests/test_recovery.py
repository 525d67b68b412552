from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from longform_tts.config import get_settings
from longform_tts.errors import DownloadError, JobNotFoundError, ValidationError
from longform_tts.jobs.models import JobState
from longform_tts.recovery.scanner import derive_job_id, title_from_object_name
from tests._helpers.fakes import FakeProvider, FakeStorage, Harness, build_service

TEXT = "Call me Ishmael. Some years ago, never mind how long precisely."


def _start_and_abandon(h: Harness) -> str:
    """Start a job, let it reach SYNTHESIZING, then drop the process state."""

    async def _go() -> str:
        job_id = await h.service.start_job(TEXT, {"title": "Moby Dick"})
        for _ in range(200):
            await asyncio.sleep(0)
            if h.store.get(job_id).state == JobState.SYNTHESIZING:
                break
        await h.service.shutdown()
        return job_id

    return asyncio.run(_go())


@pytest.mark.parametrize(
    "name,expected",
    [
        ("output/abc_1700000000000.wav", "abc"),
        ("output/my_book_1700.mp3", "my_book"),
        ("output/plain.wav", "plain"),
        ("output/a_b.wav", "a_b"),
        ("", None),
    ],
)
def test_derive_job_id(name: str, expected: str | None) -> None:
    assert derive_job_id(name) == expected


def test_title_from_object_name() -> None:
    assert title_from_object_name("output/orphan_1700000000000.wav") == "Recovered audiobook (orphan)"
    assert (
        title_from_object_name("output/0b0e4c1e-5f0a-4a57-9d36-0c6f1b1b9d2a_1700000000000.wav")
        == "Recovered audiobook (0b0e4c1e-5f0a-4a57-9d36-0c6f1b1b9d2a_1700000000000)"
    )


def test_restart_scenario_recovers_in_flight_job() -> None:
    storage = FakeStorage()
    provider = FakeProvider(storage=storage, polls_needed=1000)
    first = build_service(storage=storage, provider=provider)

    job_id = _start_and_abandon(first)
    rec = first.store.get(job_id)
    assert rec.state == JobState.SYNTHESIZING
    handle = rec.operation_handle
    name = rec.remote_object_name

    # a fresh process: new store handle, new orchestrator, same state dir
    second = build_service(storage=storage, provider=provider)
    assert second.store.get(job_id).state == JobState.SYNTHESIZING

    # operation still running: nothing to offer yet
    assert asyncio.run(second.service.scan_recoverable()) == []
    check = asyncio.run(second.service.check_operation(job_id))
    assert check["checked"] is True and check["done"] is False

    provider.finish(handle)
    items = asyncio.run(second.service.scan_recoverable())
    assert len(items) == 1
    item = items[0]
    assert item["job_id"] == job_id
    assert item["remote_object_name"] == name
    assert item["already_tracked_locally"] is True
    assert item["just_completed"] is True
    assert item["book_title"] == "Moby Dick"

    result = asyncio.run(second.service.recover_item(name))
    assert result["job_id"] == job_id
    assert result["state"] == "DOWNLOADED"
    assert Path(result["local_path"]).is_file()

    final = second.store.get(job_id)
    assert final.state == JobState.DOWNLOADED
    assert final.remote_cleaned_up is True
    assert asyncio.run(second.service.scan_recoverable()) == []


def test_untracked_artifact_is_recovered_as_new_job() -> None:
    h = build_service()
    name = "output/orphan_1700000000000.wav"
    h.storage.put(h.bucket, name, data=b"RIFF" + b"\x01" * 40)

    first = asyncio.run(h.service.scan_recoverable())
    second = asyncio.run(h.service.scan_recoverable())
    assert first == second
    assert len(first) == 1
    assert first[0]["job_id"] == "orphan"
    assert first[0]["already_tracked_locally"] is False
    assert first[0]["book_title"] == "Recovered audiobook (orphan)"
    assert first[0]["size_bytes"] == 44

    result = asyncio.run(h.service.recover_item(name))
    assert result["job_id"] == "orphan"
    assert result["state"] == "DOWNLOADED"
    assert result["filename"] == "orphan_1700000000000.mp3"

    rec = h.store.get("orphan")
    assert rec.operation_handle.startswith("recovered:")
    assert asyncio.run(h.service.scan_recoverable()) == []


def test_local_copy_hides_artifact() -> None:
    h = build_service()
    h.storage.put(h.bucket, "output/have_1.wav")
    out = Path(get_settings().output_dir)
    (out / "have_1.mp3").write_bytes(b"ID3")

    assert asyncio.run(h.service.scan_recoverable()) == []


def test_non_audio_objects_are_ignored() -> None:
    h = build_service()
    h.storage.put(h.bucket, "output/notes.txt")
    h.storage.put(h.bucket, "elsewhere/book_1.wav")

    assert asyncio.run(h.service.scan_recoverable()) == []
    assert asyncio.run(h.service.list_bucket_files()) == []


def test_failed_download_is_recovered_into_new_record() -> None:
    h = build_service()
    h.storage.fail_download = ConnectionResetError("reset")

    async def _go() -> dict:
        job_id = await h.service.start_job(TEXT, {"title": "Retry me"})
        return await h.orchestrator.wait(job_id)

    failed = asyncio.run(_go())
    assert failed["state"] == "ERROR"
    name = failed["remote_object_name"]

    tracked = [r.id for r in h.service.tracked_jobs()]
    assert tracked == [failed["id"]]

    items = asyncio.run(h.service.scan_recoverable())
    assert [i["job_id"] for i in items] == [failed["id"]]
    assert items[0]["just_completed"] is False

    files = asyncio.run(h.service.list_bucket_files())
    assert [f["name"] for f in files] == [name]
    assert files[0]["job_id"] == failed["id"]

    h.storage.fail_download = None
    result = asyncio.run(h.service.recover_item(name, job_id=failed["id"]))

    assert result["job_id"].startswith(f"{failed['id']}-recovered-")
    assert result["state"] == "DOWNLOADED"
    assert result["record"]["title"] == "Retry me"

    old = h.store.get(failed["id"])
    assert old.state == JobState.ERROR
    assert old.superseded_by == result["job_id"]
    assert old.remote_cleaned_up is True
    assert asyncio.run(h.service.scan_recoverable()) == []
    assert h.service.tracked_jobs() == []


def test_recover_missing_object_is_rejected() -> None:
    h = build_service()
    with pytest.raises(ValidationError):
        asyncio.run(h.service.recover_item("output/ghost_1.wav"))
    with pytest.raises(ValidationError):
        asyncio.run(h.service.recover_item("  "))


def test_failed_recovery_marks_error_and_raises() -> None:
    h = build_service()
    name = "output/broken_1.wav"
    h.storage.put(h.bucket, name)
    h.storage.fail_download = ConnectionResetError("reset")

    with pytest.raises(DownloadError):
        asyncio.run(h.service.recover_item(name))

    rec = h.store.get("broken")
    assert rec.state == JobState.ERROR
    assert rec.error_kind == "download"
    assert (h.bucket, name) in h.storage.objects


def test_check_operation_unknown_job() -> None:
    h = build_service()
    with pytest.raises(JobNotFoundError):
        asyncio.run(h.service.check_operation("nope"))


def test_check_operation_for_recovered_handle_skips_provider() -> None:
    h = build_service()
    h.storage.put(h.bucket, "output/solo_1.wav")
    h.storage.fail_delete = PermissionError("denied")
    asyncio.run(h.service.recover_item("output/solo_1.wav"))

    out = asyncio.run(h.service.check_operation("solo"))
    assert out["checked"] is False
    assert out["state"] == "COMPLETED"
    assert h.provider.poll_calls == 0
