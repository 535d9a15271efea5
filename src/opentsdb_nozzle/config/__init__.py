from .settings import LoggingConfig, NozzleSettings, load_settings

__all__ = ["LoggingConfig", "NozzleSettings", "load_settings"]
