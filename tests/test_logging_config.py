"""
Tests for process logging setup.
"""

import logging
import os
import shutil
import sys
import tempfile
import unittest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from vmu_link.logging_config import LIBRARY_LOGGERS, setup_logging


class TestSetupLogging(unittest.TestCase):
    """Root logger configuration"""

    def setUp(self):
        self.root = logging.getLogger()
        self.saved_handlers = list(self.root.handlers)
        for handler in self.saved_handlers:
            self.root.removeHandler(handler)
        self.saved_level = self.root.level
        self.saved_library_levels = {name: logging.getLogger(name).level for name in LIBRARY_LOGGERS}
        self.tmpdir = tempfile.mkdtemp()

    def tearDown(self):
        for handler in list(self.root.handlers):
            self.root.removeHandler(handler)
            handler.close()
        for handler in self.saved_handlers:
            self.root.addHandler(handler)
        self.root.setLevel(self.saved_level)
        for name, level in self.saved_library_levels.items():
            logging.getLogger(name).setLevel(level)
        shutil.rmtree(self.tmpdir, ignore_errors=True)

    def stream_handlers(self):
        return [h for h in self.root.handlers
                if isinstance(h, logging.StreamHandler) and not isinstance(h, logging.FileHandler)]

    def test_repeated_setup_keeps_one_console_handler(self):
        setup_logging("vmu_link", "INFO")
        setup_logging("vmu_link", "INFO")
        self.assertEqual(len(self.root.handlers), 1)
        self.assertIs(self.stream_handlers()[0].stream, sys.stdout)

    def test_role_in_format(self):
        setup_logging("companion_sim", "INFO")
        record = logging.LogRecord('vmu_link.transport', logging.INFO, __file__, 1, "hello", None, None)
        line = self.root.handlers[0].format(record)
        self.assertIn("[companion_sim] vmu_link.transport - INFO - hello", line)

    def test_file_handler_receives_output(self):
        path = os.path.join(self.tmpdir, 'link.log')
        returned = setup_logging("vmu_link", "INFO", path)
        self.assertIs(returned, self.root)
        self.assertEqual(len(self.root.handlers), 2)

        logging.getLogger('vmu_link.test').info("written to file")
        for handler in self.root.handlers:
            handler.flush()
        with open(path) as f:
            content = f.read()
        self.assertIn("written to file", content)
        self.assertIn("Logging configured", content)

    def test_unwritable_file_keeps_console(self):
        path = os.path.join(self.tmpdir, 'missing', 'link.log')
        setup_logging("vmu_link", "INFO", path)
        self.assertEqual(len(self.root.handlers), 1)
        self.assertEqual(len(self.stream_handlers()), 1)

    def test_level_names_and_numbers(self):
        setup_logging("vmu_link", "debug")
        self.assertEqual(self.root.level, logging.DEBUG)
        setup_logging("vmu_link", logging.ERROR)
        self.assertEqual(self.root.level, logging.ERROR)
        self.assertEqual(self.root.handlers[0].level, logging.ERROR)

    def test_unknown_level_falls_back_to_info(self):
        setup_logging("vmu_link", "LOUD")
        self.assertEqual(self.root.level, logging.INFO)

    def test_library_loggers_quiet_unless_debug(self):
        setup_logging("vmu_link", "INFO")
        for name in LIBRARY_LOGGERS:
            self.assertEqual(logging.getLogger(name).level, logging.WARNING)

        setup_logging("vmu_link", "DEBUG")
        for name in LIBRARY_LOGGERS:
            self.assertEqual(logging.getLogger(name).level, logging.DEBUG)


if __name__ == '__main__':
    unittest.main()
