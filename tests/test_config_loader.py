import os
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from codex_keeper.config import ConfigLoadRequest, YamlConfigLoader

PREFIX = "CODEX_KEEPER_TEST__"


class YamlConfigLoaderTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.tmp = tempfile.TemporaryDirectory()
        self.root = Path(self.tmp.name)
        self.yaml_path = self.root / "data" / "config" / "config.yaml"
        self.yaml_path.parent.mkdir(parents=True)

    async def asyncTearDown(self) -> None:
        self.tmp.cleanup()

    def request(self, **overrides) -> ConfigLoadRequest:
        values = dict(yaml_path=str(self.yaml_path), env_prefix=PREFIX, dotenv_path=None)
        values.update(overrides)
        return ConfigLoadRequest(**values)

    async def test_yaml_values_and_defaults(self) -> None:
        self.yaml_path.write_text(
            "storage:\n  base_dir: /srv/docs\n  keep_versions: 5\nrate_limit:\n  max_tokens: 10\n",
            encoding="utf-8",
        )

        with patch.dict(os.environ, {}, clear=False):
            config = await YamlConfigLoader().load(self.request())

        self.assertEqual(config.storage.base_dir, "/srv/docs")
        self.assertEqual(config.storage.keep_versions, 5)
        self.assertEqual(config.rate_limit.max_tokens, 10)
        self.assertEqual(config.fetcher.max_retries, 3)
        self.assertTrue((self.root / "data" / "storage").is_dir())
        self.assertTrue((self.root / "data" / "logs").is_dir())

    async def test_env_overrides_win_and_may_create_sections(self) -> None:
        self.yaml_path.write_text("storage:\n  keep_versions: 5\n", encoding="utf-8")
        env = {
            f"{PREFIX}STORAGE__KEEP_VERSIONS": "7",
            f"{PREFIX}FETCHER__HTML__MAX_BYTES": "1024",
            f"{PREFIX}SERVICE__MIN_UPDATE_INTERVAL_HOURS": "0.5",
        }

        with patch.dict(os.environ, env):
            config = await YamlConfigLoader().load(self.request())

        self.assertEqual(config.storage.keep_versions, 7)
        self.assertEqual(config.fetcher.html.max_bytes, 1024)
        self.assertEqual(config.service.min_update_interval_hours, 0.5)

    async def test_unknown_override_path_is_rejected(self) -> None:
        self.yaml_path.write_text("storage: {}\n", encoding="utf-8")

        for name in (f"{PREFIX}STORAGE__NOPE", f"{PREFIX}BOGUS__VALUE"):
            with self.subTest(name=name), patch.dict(os.environ, {name: "1"}):
                with self.assertRaises(KeyError):
                    await YamlConfigLoader().load(self.request())

    async def test_dotenv_file_supplies_overrides(self) -> None:
        self.yaml_path.write_text("", encoding="utf-8")
        dotenv_path = self.root / "data" / ".env"
        dotenv_path.write_text(f"{PREFIX}FETCHER__TIMEOUT_SECONDS=5\n", encoding="utf-8")

        with patch.dict(os.environ, {}):
            config = await YamlConfigLoader().load(self.request(dotenv_path=str(dotenv_path)))

        self.assertEqual(config.fetcher.timeout_seconds, 5)

    async def test_non_mapping_yaml_is_rejected(self) -> None:
        self.yaml_path.write_text("- a\n- b\n", encoding="utf-8")

        with self.assertRaises(ValueError):
            await YamlConfigLoader().load(self.request())


if __name__ == "__main__":
    unittest.main()
