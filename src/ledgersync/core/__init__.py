from ledgersync.core.config import SyncConfig, load_sync_config_from_env

__all__ = ["SyncConfig", "load_sync_config_from_env"]
