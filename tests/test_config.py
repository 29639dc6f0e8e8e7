import io
import logging
import os
import tempfile
import unittest
from pathlib import Path
from unittest import mock

from pydantic import ValidationError

from artifact_cache.config import AppConfig, CacheSettings, ConfigLoadRequest, LoggingSettings, YamlConfigLoader
from artifact_cache.logging import init_logging

CONFIG_YAML = """\
logging:
  level: DEBUG
cache:
  cache_dir: /var/cache/artifacts
"""


class CacheSettingsTests(unittest.TestCase):
    def test_cache_dir_required_when_persisting(self) -> None:
        with self.assertRaises(ValidationError):
            CacheSettings(persist=True)

    def test_cache_dir_optional_without_persistence(self) -> None:
        settings = CacheSettings(persist=False)

        self.assertIsNone(settings.cache_dir)

    def test_unknown_fields_are_rejected(self) -> None:
        with self.assertRaises(ValidationError):
            CacheSettings(cache_dir="/tmp/cache", compress=True)


class YamlConfigLoaderTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.yaml_path = Path(self._tmp.name) / "artifact-cache.yaml"
        self.yaml_path.write_text(CONFIG_YAML, encoding="utf-8")

    async def asyncTearDown(self) -> None:
        self._tmp.cleanup()

    async def _load(self, **kwargs) -> AppConfig:
        request = ConfigLoadRequest(yaml_path=str(self.yaml_path), dotenv_path=None, **kwargs)
        return await YamlConfigLoader().load(request)

    async def test_loads_yaml_with_defaults(self) -> None:
        with mock.patch.dict(os.environ, {}, clear=False):
            config = await self._load()

        self.assertEqual(config.logging.level, "DEBUG")
        self.assertEqual(config.logging.file.path, "")
        self.assertEqual(config.cache.cache_dir, "/var/cache/artifacts")
        self.assertTrue(config.cache.persist)

    async def test_environment_overrides_yaml_values(self) -> None:
        env = {
            "TESTCACHE__CACHE__CACHE_DIR": "/tmp/other",
            "TESTCACHE__LOGGING__FILE__PATH": "/tmp/cache.log",
        }
        with mock.patch.dict(os.environ, env):
            config = await self._load(env_prefix="TESTCACHE__")

        self.assertEqual(config.cache.cache_dir, "/tmp/other")
        self.assertEqual(config.logging.file.path, "/tmp/cache.log")

    async def test_unknown_override_path_is_rejected(self) -> None:
        with mock.patch.dict(os.environ, {"TESTCACHE__CACHE__COMPRESSION": "zstd"}):
            with self.assertRaises(KeyError):
                await self._load(env_prefix="TESTCACHE__")

    async def test_override_below_a_plain_value_is_rejected(self) -> None:
        with mock.patch.dict(os.environ, {"TESTCACHE__CACHE__PERSIST__ENABLED": "yes"}):
            with self.assertRaises(TypeError):
                await self._load(env_prefix="TESTCACHE__")

    async def test_override_without_key_is_rejected(self) -> None:
        with mock.patch.dict(os.environ, {"TESTCACHE__": "x"}):
            with self.assertRaises(ValueError):
                await self._load(env_prefix="TESTCACHE__")

    async def test_dotenv_file_supplies_overrides(self) -> None:
        dotenv_path = Path(self._tmp.name) / ".env"
        dotenv_path.write_text("DOTENVCACHE__CACHE__PERSIST=false\n", encoding="utf-8")

        with mock.patch.dict(os.environ, {}):
            request = ConfigLoadRequest(
                yaml_path=str(self.yaml_path),
                env_prefix="DOTENVCACHE__",
                dotenv_path=str(dotenv_path),
            )
            config = await YamlConfigLoader().load(request)

        self.assertFalse(config.cache.persist)

    async def test_missing_file_raises(self) -> None:
        self.yaml_path.unlink()

        with self.assertRaises(FileNotFoundError):
            await self._load()

    async def test_top_level_must_be_mapping(self) -> None:
        self.yaml_path.write_text("- one\n- two\n", encoding="utf-8")

        with self.assertRaises(ValueError):
            await self._load()


class InitLoggingTests(unittest.TestCase):
    def setUp(self) -> None:
        root = logging.getLogger()
        self._saved_handlers = list(root.handlers)
        self._saved_level = root.level

    def tearDown(self) -> None:
        root = logging.getLogger()
        for handler in list(root.handlers):
            root.removeHandler(handler)
        for handler in self._saved_handlers:
            root.addHandler(handler)
        root.setLevel(self._saved_level)

    def test_invalid_level_raises(self) -> None:
        with self.assertRaises(ValueError):
            init_logging(LoggingSettings(level="chatty"))

    def test_stream_handler_uses_bracketed_format(self) -> None:
        stream = io.StringIO()

        init_logging(LoggingSettings(level="info"), stream=stream)
        logging.getLogger("artifact_cache.test").info("Populating cache record. key=%s", "foo.txt")

        self.assertRegex(
            stream.getvalue(),
            r"^\[\d{4}-\d{2}-\d{2} \d{2}:\d{2}:\d{2}\]\[INFO\]\[artifact_cache\.test\] Populating cache record\. key=foo\.txt",
        )

    def test_file_handler_is_added_when_path_is_set(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            log_path = Path(tmp) / "logs" / "cache.log"
            settings = LoggingSettings.model_validate({"level": "INFO", "file": {"path": str(log_path)}})

            init_logging(settings, stream=io.StringIO())
            logging.getLogger("artifact_cache.test").info("hello")
            for handler in logging.getLogger().handlers:
                handler.flush()

            self.assertIn("hello", log_path.read_text(encoding="utf-8"))
            for handler in list(logging.getLogger().handlers):
                logging.getLogger().removeHandler(handler)
                handler.close()

    def test_unusable_log_file_falls_back_to_stream_only(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            blocker = Path(tmp) / "not-a-dir"
            blocker.write_text("", encoding="utf-8")
            settings = LoggingSettings.model_validate({"file": {"path": str(blocker / "cache.log")}})

            with self.assertLogs("artifact_cache.logging", level="ERROR"):
                init_logging(settings, stream=io.StringIO())

            self.assertEqual(len(logging.getLogger().handlers), 1)


if __name__ == "__main__":
    unittest.main()
