import errno
from unittest.mock import patch

import pytest
from fakes import FakeGroupMeServer, FakeResponse, make_messages
from typer.testing import CliRunner

from groupme_download.archive.writer import NEWEST_FIRST_FILENAME, archive_path, read_archive
from groupme_download.client.client import app
from groupme_download.models.config import ConfigLoader

runner = CliRunner()
ENV = {"GROUPME_TOKEN": "tok"}


@pytest.fixture
def fake_server():
    server = FakeGroupMeServer()
    server.add_group("111", name="Family")
    server.add_group("222", name="Work")
    server.messages["111"] = make_messages("111", 30)
    with patch("groupme_download.client.client.create_session", return_value=server):
        yield server


@pytest.fixture
def config_path(temp_dir):
    return str(temp_dir / "config.yaml")


def test_set_config_writes_token(config_path, temp_dir):
    result = runner.invoke(
        app,
        ["--config", config_path, "set-config", "--token", " abc ", "--output-dir", str(temp_dir / "out")],
    )
    assert result.exit_code == 0
    assert "Configuration saved" in result.stdout
    config = ConfigLoader.load(config_path)
    assert config.user.api_token == "abc"
    assert config.user.output_dir == str(temp_dir / "out")


def test_groups_lists_groups(fake_server, config_path):
    result = runner.invoke(app, ["--config", config_path, "groups"], env=ENV)
    assert result.exit_code == 0
    assert "111" in result.stdout
    assert "222" in result.stdout


def test_groups_without_token_is_config_error(fake_server, config_path):
    result = runner.invoke(app, ["--config", config_path, "groups"], env={"GROUPME_TOKEN": ""})
    assert result.exit_code == 2
    assert "No GroupMe API token" in result.stdout


def test_download_archives_group(fake_server, config_path, temp_dir):
    out = temp_dir / "archive"
    result = runner.invoke(app, ["--config", config_path, "download", "111", "--output", str(out)], env=ENV)
    assert result.exit_code == 0, result.stdout
    assert "Archive Summary" in result.stdout
    assert len(list(read_archive(archive_path(out, "111")))) == 30


def test_download_uses_configured_output_dir(fake_server, config_path, temp_dir):
    out = temp_dir / "from-config"
    runner.invoke(app, ["--config", config_path, "set-config", "--token", "tok", "--output-dir", str(out)])
    result = runner.invoke(app, ["--config", config_path, "download", "111"], env={"GROUPME_TOKEN": ""})
    assert result.exit_code == 0, result.stdout
    assert archive_path(out, "111").exists()


def test_download_with_tombstone_exits_zero(fake_server, config_path, temp_dir):
    gone = "https://i.groupme.com/1x1.jpeg.dead"
    fake_server.fail_nth(gone, 1, FakeResponse(410))
    fake_server.messages["111"] = make_messages(
        "111", 2, attachments=lambda i: [{"type": "image", "url": gone}] if i == 0 else []
    )
    out = temp_dir / "archive"
    result = runner.invoke(app, ["--config", config_path, "download", "111", "--output", str(out)], env=ENV)
    assert result.exit_code == 0, result.stdout
    records = list(read_archive(archive_path(out, "111")))
    assert records[0].tombstones[0].status == 410


def test_download_missing_group_exits_one(fake_server, config_path, temp_dir):
    out = temp_dir / "archive"
    result = runner.invoke(
        app, ["--config", config_path, "download", "111", "999", "--output", str(out)], env=ENV
    )
    assert result.exit_code == 1
    assert "999" in result.stdout
    assert archive_path(out, "111").exists()


def test_download_rejects_limit_in_oldest_first(fake_server, config_path, temp_dir):
    result = runner.invoke(
        app,
        ["--config", config_path, "download", "111", "--output", str(temp_dir), "--limit", "10"],
        env=ENV,
    )
    assert result.exit_code == 2


def test_download_newest_first_window(fake_server, config_path, temp_dir):
    out = temp_dir / "archive"
    result = runner.invoke(
        app,
        ["--config", config_path, "download", "111", "--output", str(out), "--mode", "newest-first", "--limit", "5"],
        env=ENV,
    )
    assert result.exit_code == 0, result.stdout
    ids = [r.id for r in read_archive(archive_path(out, "111", NEWEST_FIRST_FILENAME))]
    assert ids == ["1029", "1028", "1027", "1026", "1025"]
    assert not archive_path(out, "111").exists()


def test_download_without_output_is_config_error(fake_server, config_path):
    result = runner.invoke(app, ["--config", config_path, "download", "111"], env=ENV)
    assert result.exit_code == 2


def test_download_interrupted_exits_130(fake_server, config_path, temp_dir):
    with patch("groupme_download.client.client.GroupArchiver.run", side_effect=KeyboardInterrupt):
        result = runner.invoke(
            app, ["--config", config_path, "download", "111", "--output", str(temp_dir)], env=ENV
        )
    assert result.exit_code == 130
    assert "Interrupted" in result.stdout


def test_export_images(fake_server, config_path, temp_dir):
    photo = "https://i.groupme.com/1x1.png.cafe"
    fake_server.files[photo] = b"png"
    fake_server.messages["111"] = make_messages(
        "111", 2, attachments=lambda i: [{"type": "image", "url": photo}] if i == 1 else []
    )
    out = temp_dir / "archive"
    runner.invoke(app, ["--config", config_path, "download", "111", "--output", str(out)], env=ENV)

    dest = temp_dir / "photos"
    result = runner.invoke(
        app,
        ["--config", config_path, "export-images", "111", "--output", str(out), "--dest", str(dest)],
    )
    assert result.exit_code == 0, result.stdout
    assert "Exported 1 file(s)" in result.stdout
    (exported,) = list(dest.iterdir())
    assert exported.name.endswith(".0.bob.png")


def test_export_images_rejects_bad_date(config_path, temp_dir):
    result = runner.invoke(
        app,
        ["--config", config_path, "export-images", "111", "--output", str(temp_dir), "--start", "May 1st"],
    )
    assert result.exit_code == 2


def test_invalid_config_file_is_config_error(temp_dir):
    path = temp_dir / "bad.yaml"
    path.write_text("retry:\n  max_attempts: -1\n", encoding="utf-8")
    result = runner.invoke(app, ["--config", str(path), "groups"], env=ENV)
    assert result.exit_code == 2


def test_download_disk_full_exits_one(fake_server, config_path, temp_dir):
    disk_full = OSError(errno.ENOSPC, "No space left on device")
    with patch("groupme_download.archive.pipeline.atomic_write_json", side_effect=disk_full):
        result = runner.invoke(
            app, ["--config", config_path, "download", "111", "--output", str(temp_dir)], env=ENV
        )
    assert result.exit_code == 1
    assert "Archive write failed" in result.stdout
