"""End-to-end runs of the archive pipeline against the fake GroupMe server."""

import errno
import threading
from unittest.mock import patch

import pytest
from fakes import FakeResponse, make_messages

from groupme_download.archive.pipeline import GroupArchiver, RunContext, cancellable_sleep
from groupme_download.archive.writer import NEWEST_FIRST_FILENAME, archive_path, read_archive
from groupme_download.models.config import ArchiveConfig, CrawlMode, RetryConfig
from groupme_download.models.messages import AttachmentTombstone, Group, LocalAttachment
from groupme_download.sources.checkpoint import CheckpointStore
from groupme_download.sources.errors import ArchiveWriteError, AttachmentRetriesExhausted, CrawlCancelled
from groupme_download.sources.retry import RetryPolicy

MESSAGES_PATH = "/groups/G1/messages"


def make_context(output_dir, client, limiter, retry_policy, **overrides):
    params = {"group_ids": ["G1"], "output_dir": output_dir, "concurrency": 2}
    params.update(overrides)
    return RunContext(
        config=ArchiveConfig(**params),
        client=client,
        rate_limiter=limiter,
        retry_policy=retry_policy,
    )


def run(context):
    with GroupArchiver(context) as archiver:
        return archiver.run()


def archived(output_dir, group_id="G1", filename=None):
    path = archive_path(output_dir, group_id, filename) if filename else archive_path(output_dir, group_id)
    return list(read_archive(path))


@pytest.fixture
def g1(server):
    server.add_group("G1", name="Family")
    server.messages["G1"] = make_messages("G1", 250)
    return server


def test_full_history_with_rate_limit_on_second_page(temp_dir, client, limiter, retry_policy, retry_sleeps, g1):
    # Second request for messages is page 2's first attempt
    g1.fail_nth(MESSAGES_PATH, 2, FakeResponse(429))
    (result,) = run(make_context(temp_dir, client, limiter, retry_policy))

    assert result.ok
    assert result.messages_written == 250
    assert result.batches == 3
    assert retry_sleeps == [0.5]
    assert g1.count(MESSAGES_PATH) == 4

    records = archived(temp_dir)
    assert len(records) == 250
    assert len({r.id for r in records}) == 250
    timestamps = [r.message.created_at for r in records]
    assert timestamps == sorted(timestamps)

    group = Group.model_validate_json((temp_dir / "G1" / "group.json").read_text(encoding="utf-8"))
    assert group.name == "Family"
    checkpoint = CheckpointStore(temp_dir / ".checkpoint").load("G1")
    assert checkpoint.last_message_id == "1249"


def test_second_run_fetches_only_new_messages(temp_dir, client, limiter, retry_policy, g1):
    run(make_context(temp_dir, client, limiter, retry_policy))
    g1.messages["G1"].extend(make_messages("G1", 5, first_id=1250, first_ts=1_700_000_000))

    (result,) = run(make_context(temp_dir, client, limiter, retry_policy))
    assert result.messages_written == 5
    assert g1.calls_to(MESSAGES_PATH)[-1]["after_id"] == "1249"
    assert len(archived(temp_dir)) == 255


def test_resume_after_crash_matches_uninterrupted_run(tmp_path, client, limiter, retry_policy, g1):
    reference_dir = tmp_path / "reference"
    run(make_context(reference_dir, client, limiter, retry_policy))
    expected = {r.model_dump_json() for r in archived(reference_dir)}

    crashed_dir = tmp_path / "crashed"
    calls_before = g1.count(MESSAGES_PATH)
    # The third page request of the crashed run fails with bad credentials
    g1.fail_nth(MESSAGES_PATH, calls_before + 3, FakeResponse(401))
    (failed,) = run(make_context(crashed_dir, client, limiter, retry_policy))
    assert not failed.ok
    assert failed.messages_written == 200

    (resumed,) = run(make_context(crashed_dir, client, limiter, retry_policy))
    assert resumed.ok
    assert resumed.messages_written == 50
    assert g1.calls_to(MESSAGES_PATH)[-1]["after_id"] == "1199"
    assert {r.model_dump_json() for r in archived(crashed_dir)} == expected


def test_crash_between_archive_and_checkpoint_never_duplicates(temp_dir, client, limiter, retry_policy, g1):
    original = CheckpointStore.commit
    calls = []

    def flaky_commit(self, group_id, cursor, committed_ids):
        calls.append(cursor.token)
        if len(calls) == 2:
            raise ArchiveWriteError("disk full")
        return original(self, group_id, cursor, committed_ids)

    with patch.object(CheckpointStore, "commit", flaky_commit):
        with pytest.raises(ArchiveWriteError):
            run(make_context(temp_dir, client, limiter, retry_policy))
    assert len(archived(temp_dir)) == 200

    (result,) = run(make_context(temp_dir, client, limiter, retry_policy))
    assert result.messages_written == 50
    records = archived(temp_dir)
    assert len(records) == 250
    assert len({r.id for r in records}) == 250


def test_gone_attachment_is_tombstoned_and_run_succeeds(temp_dir, client, limiter, retry_policy, server):
    server.add_group("G1")
    photo = "https://i.groupme.com/640x480.jpeg.aaaa"
    gone = "https://i.groupme.com/640x480.jpeg.bbbb"
    server.files[photo] = b"photo"
    server.fail_nth(gone, 1, FakeResponse(410))
    server.messages["G1"] = make_messages(
        "G1",
        3,
        attachments=lambda i: [{"type": "image", "url": photo}, {"type": "image", "url": gone}] if i == 1 else [],
    )

    (result,) = run(make_context(temp_dir, client, limiter, retry_policy))
    assert result.ok
    assert result.tombstones == 1
    assert result.attachments_stored == 1

    records = archived(temp_dir)
    stored, tombstone = records[1].attachments
    assert isinstance(stored, LocalAttachment)
    assert isinstance(tombstone, AttachmentTombstone)
    assert tombstone.status == 410


def test_missing_group_fails_only_that_group(temp_dir, client, limiter, retry_policy, g1):
    context = make_context(temp_dir, client, limiter, retry_policy, group_ids=["missing", "G1"])
    missing, found = run(context)
    assert not missing.ok
    assert "404" in missing.error
    assert found.ok
    assert found.messages_written == 250


def test_run_accepts_explicit_group_ids(temp_dir, client, limiter, retry_policy, g1):
    context = make_context(temp_dir, client, limiter, retry_policy, group_ids=["missing"])
    with GroupArchiver(context) as archiver:
        (result,) = archiver.run(["G1"])
    assert result.group_id == "G1"
    assert result.messages_written == 250


def test_newest_first_window(temp_dir, client, limiter, retry_policy, g1):
    context = make_context(temp_dir, client, limiter, retry_policy, mode=CrawlMode.newest_first, limit=150)
    (result,) = run(context)
    assert result.messages_written == 150
    ids = [r.id for r in archived(temp_dir, filename=NEWEST_FIRST_FILENAME)]
    assert ids[0] == "1249"
    assert ids[-1] == "1100"
    assert not archive_path(temp_dir, "G1").exists()
    assert not (temp_dir / ".checkpoint" / "G1.json").exists()


def test_cancelled_run_commits_nothing(temp_dir, client, limiter, retry_policy, g1):
    context = make_context(temp_dir, client, limiter, retry_policy)
    context.cancel()
    with pytest.raises(CrawlCancelled):
        run(context)
    assert archived(temp_dir) == []
    assert g1.count(MESSAGES_PATH) == 0


def test_cancel_during_backoff_keeps_last_checkpoint(temp_dir, client, limiter, retry_policy, g1):
    context = make_context(temp_dir, client, limiter, retry_policy)

    def cancel_then_sleep(seconds):
        context.cancel()
        context.sleep(seconds)

    context.retry_policy = RetryPolicy(RetryConfig(base_delay=0.5), sleep=cancel_then_sleep)
    # Page 2 fails once; the run is cancelled during the backoff that follows
    g1.fail_nth(MESSAGES_PATH, 2, FakeResponse(503))
    with pytest.raises(CrawlCancelled):
        run(context)
    assert len(archived(temp_dir)) == 100
    assert CheckpointStore(temp_dir / ".checkpoint").load("G1").last_message_id == "1099"


def test_cancellable_sleep_raises_once_event_is_set():
    event = threading.Event()
    sleep = cancellable_sleep(event)
    sleep(0)
    event.set()
    with pytest.raises(CrawlCancelled):
        sleep(10)


def test_run_context_create_wires_shared_limiter(temp_dir, server):
    config = ArchiveConfig(group_ids=["G1"], output_dir=temp_dir)
    context = RunContext.create(config, "tok", session=server)
    assert context.client.rate_limiter is context.rate_limiter
    context.close()
    assert server.closed


def test_attachment_outage_aborts_group_until_next_run(temp_dir, client, limiter, retry_policy, server):
    server.add_group("G1")
    photo = "https://i.groupme.com/640x480.jpeg.cccc"
    server.files[photo] = b"photo"
    for n in range(1, 6):
        server.fail_nth(photo, n, FakeResponse(503))
    server.messages["G1"] = make_messages(
        "G1", 3, attachments=lambda i: [{"type": "image", "url": photo}] if i == 1 else []
    )

    (failed,) = run(make_context(temp_dir, client, limiter, retry_policy))
    assert not failed.ok
    assert "retries exhausted" in failed.error
    assert failed.tombstones == 0
    assert archived(temp_dir) == []
    assert not (temp_dir / ".checkpoint" / "G1.json").exists()

    (recovered,) = run(make_context(temp_dir, client, limiter, retry_policy))
    assert recovered.ok
    assert recovered.messages_written == 3
    (attachment,) = archived(temp_dir)[1].attachments
    assert isinstance(attachment, LocalAttachment)


def test_attachment_outage_is_tagged_with_group_id(temp_dir, client, limiter, retry_policy, server):
    server.add_group("G1")
    server.messages["G1"] = make_messages(
        "G1", 1, attachments=lambda i: [{"type": "image", "url": "https://i.groupme.com/1x1.png.ee"}]
    )
    outage = AttachmentRetriesExhausted("retries exhausted", locator="https://i.groupme.com/1x1.png.ee")
    context = make_context(temp_dir, client, limiter, retry_policy)
    with GroupArchiver(context) as archiver:
        with patch.object(archiver.attachments, "materialize_all", side_effect=outage):
            result = archiver.archive_group("G1")
    assert not result.ok
    assert outage.group_id == "G1"


def test_newest_first_window_never_reorders_history(temp_dir, client, limiter, retry_policy, g1):
    run(make_context(temp_dir, client, limiter, retry_policy, mode=CrawlMode.newest_first, limit=3))
    run(make_context(temp_dir, client, limiter, retry_policy))
    run(make_context(temp_dir, client, limiter, retry_policy, mode=CrawlMode.newest_first, limit=2))

    history = archived(temp_dir)
    timestamps = [r.message.created_at for r in history]
    assert len(history) == 250
    assert timestamps == sorted(timestamps)
    window = [r.id for r in archived(temp_dir, filename=NEWEST_FIRST_FILENAME)]
    assert window == ["1249", "1248"]


def test_unwritable_group_metadata_is_fatal_for_the_run(temp_dir, client, limiter, retry_policy, g1):
    disk_full = OSError(errno.ENOSPC, "No space left on device")
    with patch("groupme_download.archive.pipeline.atomic_write_json", side_effect=disk_full):
        with pytest.raises(ArchiveWriteError):
            run(make_context(temp_dir, client, limiter, retry_policy))


def test_unwritable_attachment_store_is_fatal_for_the_run(temp_dir, client, limiter, retry_policy, server):
    server.add_group("G1")
    photo = "https://i.groupme.com/640x480.jpeg.ffff"
    server.files[photo] = b"photo"
    server.messages["G1"] = make_messages("G1", 2, attachments=lambda i: [{"type": "image", "url": photo}])
    context = make_context(temp_dir, client, limiter, retry_policy)
    with pytest.raises(ArchiveWriteError):
        with GroupArchiver(context) as archiver:
            archiver.attachments.tmp_dir.rmdir()
            archiver.run()
    assert archived(temp_dir) == []
    assert not (temp_dir / ".checkpoint" / "G1.json").exists()
