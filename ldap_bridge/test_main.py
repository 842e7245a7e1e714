from __future__ import annotations
from unittest import TestCase

from .__main__ import build_parser


class ArgumentsTest(TestCase):
    def test_defaults(self):
        args = build_parser().parse_args([])
        self.assertEqual(args.config_file, "config.json")
        self.assertEqual(args.log_level, "INFO")

    def test_config_file_spellings(self):
        for flag in ("--config-file", "--configFile", "-configFile", "-c"):
            with self.subTest(flag=flag):
                args = build_parser().parse_args([flag, "/etc/bridge.json"])
                self.assertEqual(args.config_file, "/etc/bridge.json")
