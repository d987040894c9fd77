from codex_keeper.config.loader import YamlConfigLoader
from codex_keeper.config.models import AppConfig, ConfigLoadRequest

__all__ = ["AppConfig", "ConfigLoadRequest", "YamlConfigLoader"]
