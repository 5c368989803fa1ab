from deskhost.config.settings import ShellConfig, load_config

__all__ = ["ShellConfig", "load_config"]
