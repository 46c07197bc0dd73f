"""Tests for session persistence, snapshots and rollback restore."""

import pytest

from testgen_models import (
    CandidateResult, CoverageSnapshot, SessionOutcome, SessionPhase, SessionReport,
    SessionState, Verdict,
)
from testgen_session import SessionManager, restore_files


def make_state(source_file, artifact_path, existed, original=""):
    return SessionState(
        session_id="abc12345",
        source_path=str(source_file),
        artifact_path=str(artifact_path),
        source_original=source_file.read_text(),
        artifact_original=original,
        artifact_existed=existed,
        started_at="2026-01-01T00:00:00",
    )


@pytest.fixture
def manager(project):
    return SessionManager(project / ".testgen")


class TestStatePersistence:
    def test_round_trip(self, manager, source_file, artifact_path):
        state = make_state(source_file, artifact_path, existed=False)
        state.phase = SessionPhase.APPLYING
        state.coverage = CoverageSnapshot(file_pct=40.0, project_pct=20.0, missed_lines=(5, 6),
                                          covered_lines=frozenset({1, 2}))
        state.add_result(CandidateResult(name="Calc.A", verdict=Verdict.PASS, committed=True))
        state.add_result(CandidateResult(name="Calc.B", verdict=Verdict.FAIL, error="expected ';'"))

        manager.save_state(state)
        loaded = manager.load_state()

        assert manager.has_existing_session()
        assert loaded.phase == SessionPhase.APPLYING
        assert loaded.coverage == state.coverage
        assert [r.verdict for r in loaded.results] == [Verdict.PASS, Verdict.FAIL]
        assert loaded.failures == ["Calc.B: expected ';'"]
        assert loaded.committed_count() == 1

    def test_load_without_state(self, manager):
        with pytest.raises(FileNotFoundError):
            manager.load_state()

    def test_progress_newest_first(self, manager, source_file, artifact_path):
        state = make_state(source_file, artifact_path, existed=False)
        manager.update_progress(state, "first entry")
        manager.update_progress(state, "second entry")
        text = manager.progress_file.read_text()
        assert text.startswith("# Progress Log")
        assert text.index("second entry") < text.index("first entry")

    def test_report_table(self, manager, source_file, artifact_path):
        state = make_state(source_file, artifact_path, existed=False)
        report = SessionReport(outcome=SessionOutcome.COMMITTED, artifact_path=artifact_path,
                               results=[CandidateResult(name="Calc.A", verdict=Verdict.PASS,
                                                        fixed=True, fix_attempts=2, committed=True)])
        path = manager.write_report(state, report)
        assert path.name == "session-abc12345.md"
        assert "| Calc.A | pass | yes | 2 | yes |" in path.read_text()


class TestRestore:
    def test_new_artifact_is_deleted(self, source_file, artifact_path):
        state = make_state(source_file, artifact_path, existed=False)
        artifact_path.write_text("TEST(Calc, A) {}\n")
        restore_files(state)
        assert not artifact_path.exists()

    def test_existing_artifact_bytes_restored(self, source_file, artifact_path):
        original = b"// header\r\nTEST(Calc, Old) {}\r\n"
        artifact_path.write_bytes(original)
        state = make_state(source_file, artifact_path, existed=True,
                           original=original.decode("utf-8"))
        artifact_path.write_text("TEST(Calc, Old) {}\nTEST(Calc, New) {}\n")

        restore_files(state)

        assert artifact_path.read_bytes() == original

    def test_source_is_restored_if_touched(self, source_file, artifact_path):
        state = make_state(source_file, artifact_path, existed=False)
        before = source_file.read_bytes()
        source_file.write_text("// scribbled\n")
        restore_files(state)
        assert source_file.read_bytes() == before

    def test_snapshot_then_restore(self, manager, source_file, artifact_path):
        artifact_path.write_text("TEST(Calc, Old) {}\n")
        state = make_state(source_file, artifact_path, existed=True, original="TEST(Calc, Old) {}\n")
        snap_dir = manager.snapshot(state)
        manager.save_state(state)
        assert (snap_dir / "calc_test.cpp").read_text() == "TEST(Calc, Old) {}\n"
        assert (snap_dir / "calc.cpp").exists()

        artifact_path.write_text("garbage\n")
        manager.restore_snapshot()

        assert artifact_path.read_text() == "TEST(Calc, Old) {}\n"
