from datetime import date, datetime

import pytest

from groupme_download.archive.export import ImageExporter, export_filename, extension_for
from groupme_download.archive.pipeline import GROUP_FILENAME
from groupme_download.archive.writer import NEWEST_FIRST_FILENAME, ArchiveWriter, archive_path, write_snapshot
from groupme_download.models.messages import (
    ArchiveRecord,
    AttachmentKind,
    AttachmentRef,
    AttachmentTombstone,
    Group,
    GroupMember,
    InlineAttachment,
    LocalAttachment,
    Message,
)


def local_ts(*args) -> int:
    return int(datetime(*args).timestamp())


def stored(output_dir, name: str, content: bytes, url: str, kind=AttachmentKind.image) -> LocalAttachment:
    digest = name * 32
    path = output_dir / "attachments" / digest[:2] / digest
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(content)
    return LocalAttachment(
        content_hash=digest,
        size=len(content),
        path=f"attachments/{digest[:2]}/{digest}",
        ref=AttachmentRef(kind=kind, locator=url),
    )


@pytest.fixture
def archive(temp_dir):
    group = Group(id="G1", name="Family", members=[GroupMember(user_id="u0", nickname="alice")])
    (temp_dir / "G1").mkdir()
    (temp_dir / "G1" / GROUP_FILENAME).write_text(group.model_dump_json(), encoding="utf-8")

    photo = stored(temp_dir, "aa", b"jpeg", "https://i.groupme.com/1x1.jpeg.111")
    clip = stored(temp_dir, "bb", b"mp4", "https://v.groupme.com/1/clip.mp4", kind=AttachmentKind.video)
    doc = stored(temp_dir, "cc", b"pdf", "https://file.groupme.com/v1/G1/files/9", kind=AttachmentKind.file)
    gone = AttachmentRef(kind=AttachmentKind.image, locator="https://i.groupme.com/1x1.png.222")
    records = [
        ArchiveRecord(
            message=Message(id="1", user_id="u0", name="Alice A.", created_at=local_ts(2023, 5, 1, 18, 30, 5)),
            attachments=[
                InlineAttachment(ref=AttachmentRef(kind=AttachmentKind.other, payload={"type": "emoji"})),
                photo,
                AttachmentTombstone(reason="HTTP 410", status=410, ref=gone),
            ],
        ),
        ArchiveRecord(
            message=Message(id="2", user_id="u9", name="Stranger", created_at=local_ts(2023, 6, 2, 8, 0, 0)),
            attachments=[clip, doc],
        ),
    ]
    with ArchiveWriter(temp_dir, "G1") as writer:
        writer.commit(records)
    return temp_dir


def test_extension_for():
    assert extension_for("https://i.groupme.com/1024x768.jpeg.abc") == "jpeg"
    assert extension_for("https://i.groupme.com/10x10.png.abc") == "png"
    assert extension_for("https://i.groupme.com/10x10.gif.abc") == "gif"
    assert extension_for("https://v.groupme.com/x/clip.mp4") == "mp4"
    assert extension_for("https://example.com/blob") == "bin"
    assert extension_for(None) == "bin"


def test_export_filename_uses_local_time():
    name = export_filename(local_ts(2023, 5, 1, 18, 30, 5), 2, "a/b", "png")
    assert name == "2023-05-01T18_30_05.2.a_b.png"


def test_exports_images_and_videos(archive, tmp_path):
    dest = tmp_path / "photos"
    created = ImageExporter(archive).export("G1", dest)
    names = sorted(p.name for p in created)
    assert names == [
        "2023-05-01T18_30_05.1.alice.jpeg",
        "2023-06-02T08_00_00.0.Stranger.mp4",
    ]
    assert (dest / "2023-05-01T18_30_05.1.alice.jpeg").read_bytes() == b"jpeg"


def test_date_range_is_half_open(archive, tmp_path):
    exporter = ImageExporter(archive)
    may = exporter.export("G1", tmp_path / "may", start=date(2023, 5, 1), end=date(2023, 6, 2))
    assert [p.name for p in may] == ["2023-05-01T18_30_05.1.alice.jpeg"]
    june = exporter.export("G1", tmp_path / "june", start=date(2023, 6, 2))
    assert [p.name for p in june] == ["2023-06-02T08_00_00.0.Stranger.mp4"]


def test_existing_files_are_skipped(archive, tmp_path):
    dest = tmp_path / "photos"
    exporter = ImageExporter(archive)
    assert len(exporter.export("G1", dest)) == 2
    assert exporter.export("G1", dest) == []


def test_missing_archive_raises(temp_dir, tmp_path):
    with pytest.raises(FileNotFoundError):
        ImageExporter(temp_dir).export("nope", tmp_path / "out")


def test_newest_first_window_is_exported_once(archive, tmp_path):
    newer = ArchiveRecord(
        message=Message(id="3", user_id="u0", created_at=local_ts(2023, 7, 1, 9, 0, 0)),
        attachments=[stored(archive, "dd", b"gif", "https://i.groupme.com/1x1.gif.333")],
    )
    repeated = next(iter(ArchiveWriter(archive, "G1").read_records()))
    write_snapshot(archive_path(archive, "G1", NEWEST_FIRST_FILENAME), [newer, repeated])

    created = ImageExporter(archive).export("G1", tmp_path / "photos")
    assert sorted(p.name for p in created) == [
        "2023-05-01T18_30_05.1.alice.jpeg",
        "2023-06-02T08_00_00.0.Stranger.mp4",
        "2023-07-01T09_00_00.0.alice.gif",
    ]


def test_newest_first_window_alone_can_be_exported(temp_dir, tmp_path):
    record = ArchiveRecord(
        message=Message(id="1", name="Bob", created_at=local_ts(2023, 7, 1, 9, 0, 0)),
        attachments=[stored(temp_dir, "ee", b"png", "https://i.groupme.com/1x1.png.444")],
    )
    write_snapshot(archive_path(temp_dir, "G1", NEWEST_FIRST_FILENAME), [record])
    (created,) = ImageExporter(temp_dir).export("G1", tmp_path / "photos")
    assert created.name == "2023-07-01T09_00_00.0.Bob.png"
