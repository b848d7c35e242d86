"""Tests for console helpers and logging setup."""

from __future__ import annotations

import logging

from provisioner import ui


class TestElapsed:
    def test_formats(self):
        assert ui.elapsed_str(5) == "5s"
        assert ui.elapsed_str(65) == "1m 5s"
        assert ui.elapsed_str(3725) == "1h 2m 5s"


class TestConfigureLogging:
    def teardown_method(self):
        ui.set_quiet(False)
        for handler in list(logging.getLogger("provisioner").handlers):
            logging.getLogger("provisioner").removeHandler(handler)
            handler.close()

    def test_file_handler(self, tmp_path):
        path = ui.configure_logging(log_dir=tmp_path / "logs")
        assert path is not None and path.parent == tmp_path / "logs"
        logging.getLogger("provisioner.test").info("hello file")
        for handler in logging.getLogger("provisioner").handlers:
            handler.flush()
        assert "hello file" in path.read_text()

    def test_no_log_dir(self):
        assert ui.configure_logging() is None

    def test_unwritable_log_dir_is_not_fatal(self, tmp_path):
        blocker = tmp_path / "file"
        blocker.write_text("")
        assert ui.configure_logging(log_dir=blocker / "logs") is None

    def test_levels(self):
        ui.configure_logging(verbose=True)
        console = logging.getLogger("provisioner").handlers[0]
        assert console.level == logging.DEBUG
        ui.configure_logging(quiet=True)
        console = logging.getLogger("provisioner").handlers[0]
        assert console.level == logging.WARNING

    def test_handlers_replaced_not_stacked(self):
        ui.configure_logging()
        ui.configure_logging()
        assert len(logging.getLogger("provisioner").handlers) == 1


class TestQuiet:
    def test_quiet_suppresses_info_but_not_failures(self, capsys):
        ui.set_quiet(True)
        try:
            ui.info("hidden line")
            ui.fail("visible failure")
        finally:
            ui.set_quiet(False)
        out = capsys.readouterr().out
        assert "hidden line" not in out
        assert "visible failure" in out
