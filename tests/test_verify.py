"""Tests for the offline mirror verification tool."""

import json

import verify


def write_config(tmp_path, root, url_list):
    cfg = tmp_path / "config.yaml"
    cfg.write_text(f"sync_root_dir: {root}\nurl_list_path: {url_list}\n", encoding="utf-8")
    return cfg


def test_verify_reports_missing_empty_and_extra_files(tmp_path, capsys):
    root = tmp_path / "mirror"
    (root / "plugins").mkdir(parents=True)
    (root / "plugins" / "ok.hpi").write_bytes(b"ok")
    (root / "plugins" / "empty.hpi").write_bytes(b"")
    (root / "plugins" / "stale.hpi").write_bytes(b"old")
    url_list = tmp_path / "urls.json"
    url_list.write_text(
        json.dumps(
            [
                "http://a.example/plugins/ok.hpi",
                "http://a.example/plugins/empty.hpi",
                "http://a.example/plugins/missing.hpi",
            ]
        ),
        encoding="utf-8",
    )

    code = verify.main(["--config", str(write_config(tmp_path, root, url_list))])

    out = capsys.readouterr().out
    assert code == 1
    assert "[NG] missing file:" in out and "missing.hpi" in out
    assert "[NG] empty file:" in out and "empty.hpi" in out
    assert "[NG] extra file not in URL list:" in out and "stale.hpi" in out
    assert "OK: 1" in out
    assert "NG: 3" in out


def test_verify_passes_on_consistent_tree(tmp_path, capsys):
    root = tmp_path / "mirror"
    (root / "war").mkdir(parents=True)
    (root / "war" / "jenkins.war").write_bytes(b"war")
    url_list = tmp_path / "urls.json"
    url_list.write_text(json.dumps(["http://a.example/war/jenkins.war"]), encoding="utf-8")

    code = verify.main(["--config", str(write_config(tmp_path, root, url_list))])

    assert code == 0
    assert "NG: 0" in capsys.readouterr().out


def test_verify_fails_when_url_list_is_missing(tmp_path, capsys):
    code = verify.main(["--config", str(write_config(tmp_path, tmp_path / "mirror", tmp_path / "nope.json"))])

    out = capsys.readouterr().out
    assert code == 1
    assert "[NG] Error: Unable to read URL list" in out
