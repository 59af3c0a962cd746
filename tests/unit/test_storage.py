"""Unit tests for plan locking and atomic writes."""

import pytest

from planloom.storage import PlanLock, atomic_write_text, read_text_if_exists


class TestPlanLock:
    """Test cases for PlanLock."""

    def test_lock_file_location(self, tmp_path):
        """Test that the lock lives next to the document."""
        lock = PlanLock(tmp_path / "STATUS.md")
        assert lock.path == tmp_path / "STATUS.md.lock"

    def test_context_manager(self, tmp_path):
        """Test acquiring and releasing through ``with``."""
        lock = PlanLock(tmp_path / "STATUS.md")
        with lock:
            assert lock.locked
            assert lock.path.exists()
        assert not lock.locked

    def test_contention_times_out(self, tmp_path):
        """Test that a second holder gives up after the timeout."""
        with PlanLock(tmp_path / "STATUS.md"):
            contender = PlanLock(tmp_path / "STATUS.md", timeout=0.1)
            with pytest.raises(TimeoutError):
                contender.acquire()
            assert not contender.locked

    def test_reacquire_after_release(self, tmp_path):
        """Test that a released lock can be taken by someone else."""
        first = PlanLock(tmp_path / "STATUS.md")
        first.acquire()
        first.release()

        second = PlanLock(tmp_path / "STATUS.md", timeout=0.1)
        with second:
            assert second.locked

    def test_double_acquire(self, tmp_path):
        """Test that one lock object cannot be acquired twice."""
        lock = PlanLock(tmp_path / "STATUS.md")
        with lock:
            with pytest.raises(RuntimeError):
                lock.acquire()

    def test_release_without_acquire(self, tmp_path):
        """Test that releasing an unheld lock is a no-op."""
        PlanLock(tmp_path / "STATUS.md").release()


class TestAtomicWrite:
    """Test cases for atomic_write_text."""

    def test_write_and_replace(self, tmp_path):
        """Test creating and then replacing a file."""
        path = tmp_path / "STATUS.md"
        atomic_write_text(path, "first\n")
        atomic_write_text(path, "second ✅\n")

        assert path.read_text(encoding="utf-8") == "second ✅\n"

    def test_no_temporary_files_left(self, tmp_path):
        """Test that the temporary file is renamed away."""
        atomic_write_text(tmp_path / "STATUS.md", "content")
        assert [p.name for p in tmp_path.iterdir()] == ["STATUS.md"]

    def test_missing_directory(self, tmp_path):
        """Test that a missing parent directory raises and leaves nothing behind."""
        with pytest.raises(OSError):
            atomic_write_text(tmp_path / "missing" / "STATUS.md", "content")
        assert list(tmp_path.iterdir()) == []

    def test_read_text_if_exists(self, tmp_path):
        """Test reading present and missing files."""
        path = tmp_path / "STATUS.md"
        assert read_text_if_exists(path) is None
        path.write_text("hello", encoding="utf-8")
        assert read_text_if_exists(path) == "hello"
