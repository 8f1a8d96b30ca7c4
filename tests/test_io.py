from __future__ import annotations

from pathlib import Path
from unittest import mock

import pytest

from kb_chat.utils.io import append_jsonl, read_jsonl, safe_name


def test_append_jsonl_writes_batch_and_reports_prior_size(tmp_path: Path):
    p = tmp_path / "rows.jsonl"
    assert append_jsonl(p, [{"n": 1}]) == 0
    size = p.stat().st_size
    assert append_jsonl(p, [{"n": 2}, {"n": 3}]) == size
    assert read_jsonl(p) == [{"n": 1}, {"n": 2}, {"n": 3}]


def test_append_jsonl_truncates_a_failed_write(tmp_path: Path):
    p = tmp_path / "rows.jsonl"
    append_jsonl(p, [{"n": 1}])
    with mock.patch("kb_chat.utils.io.os.fsync", side_effect=[OSError(28, "No space left"), None]):
        with pytest.raises(OSError):
            append_jsonl(p, [{"n": 2}, {"n": 3}])
    assert read_jsonl(p) == [{"n": 1}]


def test_unserializable_row_writes_nothing(tmp_path: Path):
    p = tmp_path / "rows.jsonl"
    with pytest.raises(ValueError):
        append_jsonl(p, [{"n": 1}, {"bad": object()}])
    assert not p.exists()


def test_safe_name_replaces_path_characters():
    assert safe_name("../a b/c") == ".._a_b_c"
    assert safe_name("  ") == "default"
