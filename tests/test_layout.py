import json

from chatrelay.layout import LOG_HEADER, ServerLayout, main, prepare_layout


def test_from_root_paths(tmp_path):
    layout = ServerLayout.from_root(tmp_path)
    assert layout.root == tmp_path.absolute()
    assert layout.file_dir == layout.root / "AllFile"
    assert layout.file_index == layout.root / "AllFile" / "keyAndinfo.json"
    assert layout.user_dir == layout.root / "AllUserInfo"
    assert layout.user_index == layout.root / "AllUserInfo" / "AllUserBaseInfo.json"
    assert layout.server_file_dir == layout.root / "ServerFile"
    assert layout.log_path == layout.root / "log.txt"


def test_from_root_accepts_str(tmp_path):
    assert ServerLayout.from_root(str(tmp_path)) == ServerLayout.from_root(tmp_path)


def test_prepare_creates_everything(tmp_path):
    layout = prepare_layout(tmp_path)
    assert layout.file_dir.is_dir()
    assert layout.user_dir.is_dir()
    assert layout.server_file_dir.is_dir()
    assert json.loads(layout.file_index.read_text()) == {}
    assert json.loads(layout.user_index.read_text()) == {}
    assert layout.log_path.read_text() == LOG_HEADER


def test_new_log_starts_with_header(tmp_path):
    layout = prepare_layout(tmp_path)
    assert layout.log_path.read_text() == (
        "==================================log================================="
    )


def test_prepare_keeps_existing_data(tmp_path):
    layout = prepare_layout(tmp_path)
    layout.file_index.write_text('{"1": [".txt", 3, ""]}')
    layout.log_path.write_text("kept")
    prepare_layout(tmp_path)
    assert json.loads(layout.file_index.read_text()) == {"1": [".txt", 3, ""]}
    assert layout.log_path.read_text() == "kept"


def test_existing_dir_without_index_is_left_alone(tmp_path):
    (tmp_path / "AllFile").mkdir()
    layout = prepare_layout(tmp_path)
    assert not layout.file_index.exists()
    assert layout.user_index.exists()


def test_main_prepare_only(tmp_path, capsys):
    root = tmp_path / "server"
    assert main(["--root", str(root), "--prepare-only"]) == 0
    assert (root / "AllFile").is_dir()
    assert (root / "log.txt").exists()
    assert str(root.absolute()) in capsys.readouterr().out