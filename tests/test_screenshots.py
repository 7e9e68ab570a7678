"""
Tests for ScreenshotStore path encoding, writes and lookups.
"""

from __future__ import annotations

from pathlib import Path

import pytest

from session_relay import ScreenshotReadError, ScreenshotStore, ScreenshotWriteError
from session_relay.screenshots import decode_component, encode_component


class TestEncodeComponent:
    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("interview-1", "interview-1"),
            ("2026-10-19T10:00:00.000Z", "2026-10-19T10%3A00%3A00.000Z"),
            ("../../etc", "..%2F..%2Fetc"),
            ("a/b", "a%2Fb"),
        ],
    )
    def test_unsafe_characters_encoded(self, raw: str, expected: str) -> None:
        assert encode_component(raw) == expected
        assert decode_component(expected) == raw

    @pytest.mark.parametrize("raw", ["", "   ", ".", ".."])
    def test_unusable_components_rejected(self, raw: str) -> None:
        with pytest.raises(ValueError):
            encode_component(raw)

    @pytest.mark.parametrize(
        "first,second", [("user.1", "user-1"), ("T1.5", "T1:5"), ("a/b", "a%2Fb")]
    )
    def test_distinct_values_stay_distinct(self, first: str, second: str) -> None:
        assert encode_component(first) != encode_component(second)


class TestScreenshotStore:
    def test_path_contains_interview_and_user(self, tmp_path: Path) -> None:
        store = ScreenshotStore(tmp_path)

        path = store.path_for("interview-1", "userA", "T1")

        assert path == tmp_path / "interview-1" / "userA" / "screenshot-T1.png"

    def test_path_never_escapes_root(self, tmp_path: Path) -> None:
        store = ScreenshotStore(tmp_path / "root")

        path = store.path_for("../outside", "../../me", "../t")

        assert tmp_path / "root" in path.parents

    @pytest.mark.asyncio
    async def test_save_creates_parent_directories(self, tmp_path: Path) -> None:
        store = ScreenshotStore(tmp_path / "deep" / "screens")

        path = await store.save("interview-1", "userA", "T1", b"\x89PNG")

        assert path.read_bytes() == b"\x89PNG"

    @pytest.mark.asyncio
    async def test_save_invalid_component_raises(self, tmp_path: Path) -> None:
        store = ScreenshotStore(tmp_path)

        with pytest.raises(ScreenshotWriteError):
            await store.save("..", "userA", "T1", b"x")

    @pytest.mark.asyncio
    async def test_list_and_resolve(self, tmp_path: Path) -> None:
        store = ScreenshotStore(tmp_path)
        await store.save("interview-1", "userB", "T2", b"b")
        await store.save("interview-1", "userA", "T9", b"a9")
        await store.save("interview-1", "userA", "T1", b"a1")
        await store.save("interview-2", "userC", "T1", b"c")

        listed = store.list_screenshots("interview-1")

        assert [(info.user_id, info.filename) for info in listed] == [
            ("userA", "screenshot-T1.png"),
            ("userA", "screenshot-T9.png"),
            ("userB", "screenshot-T2.png"),
        ]
        assert listed[0].url == "/api/interviews/interview-1/screenshots/userA/screenshot-T1.png"
        assert store.resolve("interview-1", "userA", "screenshot-T9.png").read_bytes() == b"a9"

    def test_list_unknown_interview_is_empty(self, tmp_path: Path) -> None:
        assert ScreenshotStore(tmp_path).list_screenshots("nope") == []

    @pytest.mark.parametrize(
        "filename", ["screenshot-T1.png", "notes.txt", "../screenshot-T1.png"]
    )
    def test_resolve_missing_or_foreign_file(self, tmp_path: Path, filename: str) -> None:
        store = ScreenshotStore(tmp_path)

        with pytest.raises(ScreenshotReadError):
            store.resolve("interview-1", "userA", filename)

    @pytest.mark.asyncio
    async def test_lookalike_ids_and_timestamps_do_not_collide(self, tmp_path: Path) -> None:
        store = ScreenshotStore(tmp_path)
        await store.save("interview-1", "user.1", "T1", b"dotted")
        await store.save("interview-1", "user-1", "T1", b"dashed")
        await store.save("interview-1", "userA", "T1.5", b"period")
        await store.save("interview-1", "userA", "T1:5", b"colon")

        listed = store.list_screenshots("interview-1")

        assert [(info.user_id, info.filename) for info in listed] == [
            ("user-1", "screenshot-T1.png"),
            ("user.1", "screenshot-T1.png"),
            ("userA", "screenshot-T1%3A5.png"),
            ("userA", "screenshot-T1.5.png"),
        ]
        contents = {
            (info.user_id, info.filename): store.resolve(
                "interview-1", info.user_id, info.filename
            ).read_bytes()
            for info in listed
        }
        assert sorted(contents.values()) == [b"colon", b"dashed", b"dotted", b"period"]

    @pytest.mark.asyncio
    async def test_url_round_trips_encoded_names(self, tmp_path: Path) -> None:
        store = ScreenshotStore(tmp_path)
        await store.save("interview 1", "user/1", "T1:5", b"x")

        [info] = store.list_screenshots("interview 1")

        assert info.user_id == "user/1"
        assert info.url == (
            "/api/interviews/interview%201/screenshots/user%2F1/screenshot-T1%253A5.png"
        )
