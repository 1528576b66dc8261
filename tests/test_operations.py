"""Tests for the sync orchestrator."""

import os
import shutil
import tempfile
from pathlib import Path
from unittest.mock import patch

import pytest
from fakes import FakeClient, FakeCommitter, Pages

from cortexsync.core.codec import decode
from cortexsync.core.differ import SyncPhase, SyncResult
from cortexsync.core.errors import CommitFailed, InstanceLocked, TransportError
from cortexsync.core.git import CommitBoundary, GitRepository
from cortexsync.core.lock import InstanceLock
from cortexsync.core.operations import (
    SyncOrchestrator,
    build_commit_message,
    collect_status,
    validate_instance,
)
from cortexsync.core.store import FileStore
from cortexsync.models.content_types import ContentTypeDescriptor, Paginated, ScriptCode
from cortexsync.models.config import InstanceConfig
from cortexsync.models.registry import ModuleDefinition, ModuleRegistry

ITEMS = ContentTypeDescriptor(name="items", endpoint="items", id_field="id")
OTHERS = ContentTypeDescriptor(name="others", endpoint="others", id_field="id")


def module_with(*descriptors: ContentTypeDescriptor) -> ModuleDefinition:
    return ModuleDefinition(name="demo", title="Demo", base_api_path="/api", content_types=descriptors)


def files_in(root: Path, content_type: str = "items") -> list[str]:
    directory = root / "demo" / content_type
    if not directory.is_dir():
        return []
    return sorted(p.name for p in directory.iterdir())


class TestPull:
    """Tests for SyncOrchestrator.pull."""

    def test_add_then_remove_scenario(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            root = Path(tmpdir)
            client = FakeClient({"items": [{"id": "a", "v": 1}, {"id": "b", "v": 2}]})
            committer = FakeCommitter()
            orchestrator = SyncOrchestrator(module_with(ITEMS), client, FileStore(root), committer)

            report = orchestrator.pull()

            result = report.results[0]
            assert result.added == {"a", "b"}
            assert result.phase == SyncPhase.DONE
            assert files_in(root) == ["a.yaml", "b.yaml"]
            assert len(committer.commits) == 1
            assert "2 added" in committer.commits[0][1]
            assert report.commit_id is not None

            client.responses["items"] = [{"id": "a", "v": 1}]
            report = orchestrator.pull()

            assert report.results[0].removed == {"b"}
            assert files_in(root) == ["a.yaml"]
            assert len(committer.commits) == 2
            paths, message = committer.commits[1]
            assert paths == ["demo/items/b.yaml"]
            assert "1 removed" in message

    def test_second_pull_is_noop(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            root = Path(tmpdir)
            client = FakeClient({"items": [{"id": "a", "v": 1}]})
            committer = FakeCommitter()
            orchestrator = SyncOrchestrator(module_with(ITEMS), client, FileStore(root), committer)
            orchestrator.pull()
            mtime = (root / "demo/items/a.yaml").stat().st_mtime_ns

            report = orchestrator.pull()

            assert report.results[0].unchanged_ids == {"a"}
            assert not report.has_changes
            assert report.commit_id is None
            assert len(committer.commits) == 1
            assert (root / "demo/items/a.yaml").stat().st_mtime_ns == mtime

    def test_collision_aborts_only_that_content_type(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            root = Path(tmpdir)
            client = FakeClient({
                "items": [{"id": "Foo Bar"}, {"id": "foo_bar"}],
                "others": [{"id": "x"}],
            })
            committer = FakeCommitter()
            orchestrator = SyncOrchestrator(module_with(ITEMS, OTHERS), client, FileStore(root), committer)

            report = orchestrator.pull()

            items, others = report.results
            assert items.phase == SyncPhase.ABORTED
            assert "foo_bar.yaml" in items.error
            assert files_in(root, "items") == []
            assert others.phase == SyncPhase.DONE
            assert files_in(root, "others") == ["x.yaml"]
            assert report.failed
            assert committer.commits[0][0] == ["demo/others/x.yaml"]

    def test_fetch_failure_does_not_stop_siblings(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            root = Path(tmpdir)
            client = FakeClient({
                "items": TransportError("API error 500", status=500),
                "others": [{"id": "x"}],
            })
            orchestrator = SyncOrchestrator(module_with(ITEMS, OTHERS), client, FileStore(root), FakeCommitter())

            report = orchestrator.pull()

            assert report.results[0].phase == SyncPhase.ABORTED
            assert "Failed to fetch items" in report.results[0].error
            assert report.results[1].added == {"x"}

    def test_partial_pagination_applied_without_removals(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            root = Path(tmpdir)
            paged = ContentTypeDescriptor(
                name="items",
                endpoint="items",
                id_field="id",
                pull_strategy=Paginated(),
                response_path="data",
            )
            store = FileStore(root)
            committer = FakeCommitter()
            full = FakeClient({"items": Pages({"data": [{"id": "old"}], "next_cursor": None})})
            SyncOrchestrator(module_with(paged), full, store, committer).pull()

            flaky = FakeClient({"items": Pages(
                {"data": [{"id": 1}, {"id": 2}], "next_cursor": "p2"},
                {"data": [{"id": 3}, {"id": 4}], "next_cursor": "p3"},
                TransportError("API error 502", status=502),
            )})
            report = SyncOrchestrator(module_with(paged), flaky, store, committer).pull()

            result = report.results[0]
            assert result.added == {"1", "2", "3", "4"}
            assert result.removed == set()
            assert result.retained == {"old"}
            assert result.phase == SyncPhase.DONE
            assert any("page 3" in w for w in result.warnings)
            assert files_in(root) == ["1.yaml", "2.yaml", "3.yaml", "4.yaml", "old.yaml"]

    def test_retained_object_never_overwritten(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            root = Path(tmpdir)
            paged = ContentTypeDescriptor(
                name="items",
                endpoint="items",
                id_field="id",
                pull_strategy=Paginated(),
                response_path="data",
            )
            store = FileStore(root)
            committer = FakeCommitter()
            full = FakeClient({"items": Pages({"data": [{"id": "Foo Bar", "v": 1}], "next_cursor": None})})
            SyncOrchestrator(module_with(paged), full, store, committer).pull()

            flaky = FakeClient({"items": Pages(
                {"data": [{"id": "foo_bar", "v": 2}], "next_cursor": "p2"},
                TransportError("API error 502", status=502),
            )})
            report = SyncOrchestrator(module_with(paged), flaky, store, committer).pull()

            result = report.results[0]
            assert result.phase == SyncPhase.ABORTED
            assert "foo_bar.yaml" in result.error
            assert decode((root / "demo/items/foo_bar.yaml").read_text()) == {"id": "Foo Bar", "v": 1}
            assert len(committer.commits) == 1

    def test_write_onto_kept_file_aborts(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            root = Path(tmpdir)
            directory = root / "demo" / "items"
            directory.mkdir(parents=True)
            (directory / "legacy.yaml").write_text("id: a\n")
            client = FakeClient({"items": [{"id": "a"}, {"id": "legacy", "v": 1}]})

            report = SyncOrchestrator(module_with(ITEMS), client, FileStore(root), FakeCommitter()).pull()

            assert report.results[0].phase == SyncPhase.ABORTED
            assert (directory / "legacy.yaml").read_text() == "id: a\n"
            assert files_in(root) == ["legacy.yaml"]

    def test_partial_apply_reports_only_written_changes(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            root = Path(tmpdir)
            committer = FakeCommitter()
            client = FakeClient({"items": [{"id": "a"}, {"id": "b"}, {"id": "c"}]})
            orchestrator = SyncOrchestrator(module_with(ITEMS), client, FileStore(root), committer)
            real_replace = os.replace
            calls = []

            def failing_replace(src, dst):
                calls.append(dst)
                if len(calls) == 2:
                    raise OSError("disk full")
                return real_replace(src, dst)

            with patch("cortexsync.core.store.os.replace", side_effect=failing_replace):
                report = orchestrator.pull()

            result = report.results[0]
            assert result.phase == SyncPhase.PARTIALLY_APPLIED
            assert result.added == {"a"}
            assert any("2 planned change(s) not applied" in w for w in result.warnings)
            paths, message = committer.commits[0]
            assert paths == ["demo/items/a.yaml"]
            lines = message.splitlines()
            assert lines[0] == "Pull demo: 1 added"
            assert "- items: 1 added (partially applied)" in lines
            assert report.failed

    def test_incomplete_script_keeps_local_file(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            root = Path(tmpdir)
            scripts = ContentTypeDescriptor(
                name="scripts",
                endpoint="list",
                id_field="script_uid",
                pull_strategy=ScriptCode(
                    list_endpoint="list",
                    code_endpoint="code",
                    list_response_path="reply",
                    uid_field="script_uid",
                ),
                method="POST",
                request_body={"request_data": {}},
            )
            store = FileStore(root)
            committer = FakeCommitter()
            listing = {"reply": [{"script_uid": "s1", "name": "one"}]}
            ok = FakeClient({"list": listing, "code": {"reply": "return 1"}})
            SyncOrchestrator(module_with(scripts), ok, store, committer).pull()
            before = (root / "demo/scripts/s1.yaml").read_text()

            broken = FakeClient({"list": listing, "code": TransportError("API error 500", status=500)})
            report = SyncOrchestrator(module_with(scripts), broken, store, committer).pull()

            assert report.results[0].unchanged_ids == {"s1"}
            assert (root / "demo/scripts/s1.yaml").read_text() == before
            assert "return 1" in before
            assert len(committer.commits) == 1

    def test_locked_instance(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            root = Path(tmpdir)
            client = FakeClient({"items": [{"id": "a"}]})
            orchestrator = SyncOrchestrator(module_with(ITEMS), client, FileStore(root), FakeCommitter())

            with InstanceLock(root):
                with pytest.raises(InstanceLocked):
                    orchestrator.pull()

            assert client.calls == []
            assert files_in(root) == []

    def test_commit_failure_keeps_files_and_releases_lock(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            root = Path(tmpdir)
            committer = FakeCommitter()
            client = FakeClient({"items": [{"id": "a"}]})
            orchestrator = SyncOrchestrator(module_with(ITEMS), client, FileStore(root), committer)

            with patch.object(committer, "commit", side_effect=CommitFailed("git commit failed")):
                with pytest.raises(CommitFailed) as exc_info:
                    orchestrator.pull()

            assert files_in(root) == ["a.yaml"]
            assert exc_info.value.report.results[0].phase == SyncPhase.ABORTED
            assert not (root / ".cortexsync.lock").exists()


class TestDiff:
    """Tests for SyncOrchestrator.diff."""

    def test_diff_does_not_write(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            root = Path(tmpdir)
            client = FakeClient({"items": [{"id": "a"}]})
            committer = FakeCommitter()
            orchestrator = SyncOrchestrator(module_with(ITEMS), client, FileStore(root), committer)

            report = orchestrator.diff()

            assert report.operation == "diff"
            assert report.results[0].added == {"a"}
            assert report.results[0].phase == SyncPhase.DONE
            assert files_in(root) == []
            assert committer.commits == []

    def test_diff_lists_changed_fields(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            root = Path(tmpdir)
            client = FakeClient({"items": [{"id": "a", "v": 1, "name": "x"}]})
            orchestrator = SyncOrchestrator(module_with(ITEMS), client, FileStore(root), FakeCommitter())
            orchestrator.pull()

            client.responses["items"] = [{"id": "a", "v": 2, "tag": "t"}]
            report = orchestrator.diff()

            changes = report.results[0].field_changes["a"]
            assert changes.modified == ["v"]
            assert changes.added == ["tag"]
            assert changes.removed == ["name"]

    def test_selected_content_types_only(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            client = FakeClient({"items": [{"id": "a"}], "others": [{"id": "x"}]})
            module = module_with(ITEMS, OTHERS).select(["other"])
            orchestrator = SyncOrchestrator(module, client, FileStore(Path(tmpdir)), FakeCommitter())

            report = orchestrator.diff()

            assert [r.content_type for r in report.results] == ["others"]
            assert client.calls_to("items") == []

    def test_diff_ignores_lock(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            root = Path(tmpdir)
            orchestrator = SyncOrchestrator(
                module_with(ITEMS), FakeClient({"items": []}), FileStore(root), FakeCommitter()
            )

            with InstanceLock(root):
                report = orchestrator.diff()

            assert not report.failed


class TestConnectivity:
    """Tests for SyncOrchestrator.test."""

    def test_ok(self) -> None:
        orchestrator = SyncOrchestrator(module_with(ITEMS), FakeClient(), FileStore(Path("/unused")))
        assert orchestrator.test() is True

    def test_failure(self) -> None:
        client = FakeClient()
        client.connected = False
        orchestrator = SyncOrchestrator(module_with(ITEMS), client, FileStore(Path("/unused")))

        with pytest.raises(TransportError):
            orchestrator.test()


class TestCommitMessage:
    """Tests for commit message generation."""

    def test_message_lists_changed_content_types(self) -> None:
        results = [
            SyncResult(content_type="dashboards", added={"a", "b"}),
            SyncResult(content_type="widgets", unchanged_ids={"w"}),
            SyncResult(content_type="biocs", updated={"x"}, removed={"y"}),
        ]

        message = build_commit_message("xsiam", results)

        lines = message.splitlines()
        assert lines[0] == "Pull xsiam: 2 added, 1 updated, 1 removed"
        assert "- dashboards: 2 added" in lines
        assert "- biocs: 1 updated, 1 removed" in lines
        assert not any("widgets" in line for line in lines)

    def test_no_changes_no_message(self) -> None:
        assert build_commit_message("xsiam", [SyncResult(content_type="t")]) is None


def demo_registry() -> ModuleRegistry:
    registry = ModuleRegistry()
    registry.register("demo", [ITEMS], base_api_path="/api")
    return registry


class TestLocalInspection:
    """Tests for status and validation, which never touch the network."""

    def write_tree(self, root: Path) -> Path:
        directory = root / "demo" / "items"
        directory.mkdir(parents=True)
        (directory / "good.yaml").write_text("id: good\n")
        (directory / "broken.yaml").write_text("id: [unclosed\n")
        return directory

    def test_status_counts_only_readable_objects(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            root = Path(tmpdir)
            self.write_tree(root)

            status = collect_status(root, demo_registry(), InstanceConfig(path=root, name="t"))

            module = status.modules[0]
            assert module.object_counts == {"items": 1}
            assert module.corrupt_files == 1
            assert not module.enabled
            assert status.lock is None

    def test_validate_reports_invalid_files(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            root = Path(tmpdir)
            self.write_tree(root)
            stray = root / "demo" / "leftovers"
            stray.mkdir()
            (stray / "old.yaml").write_text("id: old\n")

            report = validate_instance(root, demo_registry())

            assert report.checked == 3
            assert not report.valid
            assert sorted(Path(e.path).name for e in report.errors) == ["broken.yaml", "old.yaml"]
            assert any("unknown content type 'leftovers'" in e.reason for e in report.errors)

    def test_validate_clean_tree(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            root = Path(tmpdir)
            client = FakeClient({"items": [{"id": "a"}, {"id": "b"}]})
            SyncOrchestrator(module_with(ITEMS), client, FileStore(root), FakeCommitter()).pull()

            report = validate_instance(root, demo_registry())

            assert report.valid
            assert report.checked == 2


@pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")
class TestPullWithGit:
    """End-to-end pull against a real git repository."""

    def test_commits_once_per_pull(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            root = Path(tmpdir)
            repo = GitRepository.init(root)
            client = FakeClient({"items": [{"id": "a", "v": 1}, {"id": "b", "v": 2}]})
            orchestrator = SyncOrchestrator(
                module_with(ITEMS), client, FileStore(root), CommitBoundary(repo)
            )

            first = orchestrator.pull()
            second = orchestrator.pull()

            assert first.commit_id is not None
            assert second.commit_id is None
            assert repo.head() == first.commit_id
            assert repo.status() == []
