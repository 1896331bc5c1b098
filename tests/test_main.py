#!/usr/bin/env python3
"""
Test the main function and command line interface of trimforge.py.
"""

import logging
import os
import shutil
import subprocess
import sys
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

# Add parent directory to path to import trimforge module
sys.path.insert(0, str(Path(__file__).parent.parent))
import trimforge  # pylint: disable=wrong-import-position

SCRIPT = str(Path(__file__).parent.parent / "trimforge.py")


class TestMain(unittest.TestCase):
    def setUp(self) -> None:
        # Create a temporary directory
        self.test_dir = tempfile.mkdtemp()

        # Create test files
        self.test_file = os.path.join(self.test_dir, "test.txt")
        with open(self.test_file, "wb") as f:
            f.write(b"Line 1  \nLine 2\n\n")
        self.other_file = os.path.join(self.test_dir, "other.md")
        with open(self.other_file, "wb") as f:
            f.write(b"# Title\t\n")

        trimforge.logger.setLevel(logging.CRITICAL)

    def tearDown(self) -> None:
        # Clean up the temporary directory
        shutil.rmtree(self.test_dir)
        trimforge.logger.setLevel(logging.CRITICAL)

    def read(self, path: str) -> bytes:
        with open(path, "rb") as f:
            return f.read()

    def test_main_with_directory(self) -> None:
        """Test main function with a directory argument."""
        test_args = ["trimforge.py", self.test_dir, "--no-progress"]

        with patch("sys.argv", test_args):
            result = trimforge.main()

        self.assertEqual(result, 0)
        self.assertEqual(self.read(self.test_file), b"Line 1\nLine 2\n")
        self.assertEqual(self.read(self.other_file), b"# Title\n")

    def test_main_with_pattern(self) -> None:
        """Test that --pattern limits the files processed."""
        test_args = ["trimforge.py", self.test_dir, "--pattern", ".md", "--no-progress"]

        with patch("sys.argv", test_args):
            result = trimforge.main()

        self.assertEqual(result, 0)
        self.assertEqual(self.read(self.test_file), b"Line 1  \nLine 2\n\n")
        self.assertEqual(self.read(self.other_file), b"# Title\n")

    def test_main_single_file(self) -> None:
        """Test main function with a single file argument."""
        test_args = ["trimforge.py", self.test_file, "--pattern", "*.md", "--no-progress"]

        with patch("sys.argv", test_args):
            result = trimforge.main()

        self.assertEqual(result, 0)
        self.assertEqual(self.read(self.test_file), b"Line 1\nLine 2\n")
        self.assertEqual(self.read(self.other_file), b"# Title\t\n")

    def test_main_defaults_to_current_directory(self) -> None:
        """Test that no path argument walks the current directory."""
        cwd = os.getcwd()
        os.chdir(self.test_dir)
        try:
            with patch("sys.argv", ["trimforge.py", "--no-progress"]):
                result = trimforge.main()
        finally:
            os.chdir(cwd)

        self.assertEqual(result, 0)
        self.assertEqual(self.read(self.test_file), b"Line 1\nLine 2\n")

    def test_main_respects_gitignore(self) -> None:
        """Test that ignored files are skipped unless -u is given."""
        with open(os.path.join(self.test_dir, ".gitignore"), "w", encoding="utf-8") as f:
            f.write("test.txt\n")

        with patch("sys.argv", ["trimforge.py", self.test_dir, "--no-progress"]):
            self.assertEqual(trimforge.main(), 0)
        self.assertEqual(self.read(self.test_file), b"Line 1  \nLine 2\n\n")

        with patch("sys.argv", ["trimforge.py", self.test_dir, "-u", "--no-progress"]):
            self.assertEqual(trimforge.main(), 0)
        self.assertEqual(self.read(self.test_file), b"Line 1\nLine 2\n")

    def test_main_summary_is_logged(self) -> None:
        """Test that the final summary reports the counts."""
        test_args = ["trimforge.py", self.test_dir, "--no-progress"]
        trimforge.logger.setLevel(logging.INFO)

        with patch("sys.argv", test_args):
            with self.assertLogs(trimforge.logger, level="INFO") as logs:
                result = trimforge.main()

        self.assertEqual(result, 0)
        self.assertTrue(
            any("Processed 2 files, changed 2 files in" in line for line in logs.output)
        )

    def test_main_per_file_errors_do_not_fail(self) -> None:
        """Test that a per-file error keeps the exit code at zero."""
        test_args = ["trimforge.py", self.test_dir, "--no-progress"]
        failing = trimforge.ProcessingResult(self.test_file, error=OSError("denied"))

        with patch("sys.argv", test_args):
            with patch("trimforge.rewrite_file", return_value=failing):
                result = trimforge.main()

        self.assertEqual(result, 0)

    def test_main_nonexistent_path(self) -> None:
        """Test main function with invalid path."""
        test_args = ["trimforge.py", "/nonexistent/directory", "--no-progress"]

        with patch("sys.argv", test_args):
            result = trimforge.main()
            self.assertEqual(result, 1)

    def test_main_walk_error(self) -> None:
        """Test that a failed walk exits non-zero."""
        test_args = ["trimforge.py", self.test_dir, "--no-progress"]

        def broken_find_files(*_args, **_kwargs):
            yield self.test_file
            raise trimforge.WalkError(self.test_dir, PermissionError("denied"))

        with patch("sys.argv", test_args):
            with patch("trimforge.find_files", side_effect=broken_find_files):
                result = trimforge.main()

        self.assertEqual(result, 1)
        # Files produced before the failure are still processed.
        self.assertEqual(self.read(self.test_file), b"Line 1\nLine 2\n")

    def test_main_keyboard_interrupt(self) -> None:
        """Test main function handling KeyboardInterrupt."""
        test_args = ["trimforge.py", self.test_dir, "--no-progress"]

        with patch("sys.argv", test_args):
            with patch("trimforge.normalize_tree", side_effect=KeyboardInterrupt()):
                result = trimforge.main()
                self.assertEqual(result, 130)

    def test_main_exception_handling(self) -> None:
        """Test main function handling unexpected exceptions."""
        test_args = ["trimforge.py", self.test_dir, "--no-progress"]

        with patch("sys.argv", test_args):
            with patch("trimforge.normalize_tree", side_effect=RuntimeError("Test error")):
                result = trimforge.main()
                self.assertEqual(result, 1)

    def test_main_invalid_workers_count(self) -> None:
        """Test main function with invalid workers count."""
        test_args = ["trimforge.py", self.test_dir, "--workers", "0", "--no-progress"]

        with patch("sys.argv", test_args):
            with patch("trimforge.normalize_tree", return_value=(trimforge.RunStats(), None)) as run:
                result = trimforge.main()

        self.assertEqual(result, 0)
        self.assertEqual(run.call_args.kwargs["max_workers"], trimforge.DEFAULT_WORKERS)

    def test_main_verbose_mode(self) -> None:
        """Test main function with verbose logging."""
        test_args = ["trimforge.py", self.test_dir, "--verbose", "--no-progress"]

        with patch("sys.argv", test_args):
            result = trimforge.main()

        self.assertEqual(result, 0)
        self.assertEqual(trimforge.logger.level, logging.DEBUG)

    def test_version_argument(self) -> None:
        """Test --version argument."""
        test_args = ["trimforge.py", "--version"]

        with patch("sys.argv", test_args):
            with patch("trimforge.normalize_tree") as run:
                with self.assertRaises(SystemExit) as ctx:
                    trimforge.main()

        self.assertEqual(ctx.exception.code, 0)
        run.assert_not_called()

    def test_script_execution(self) -> None:
        """Test running the script as a subprocess."""
        result = subprocess.run(
            [sys.executable, SCRIPT, "--version"],
            capture_output=True,
            text=True,
            check=False,
        )
        self.assertEqual(result.returncode, 0)
        self.assertIn(f"TrimForge v{trimforge.__version__}", result.stdout)


if __name__ == "__main__":
    unittest.main()
