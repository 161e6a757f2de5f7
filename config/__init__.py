from .config_loader import Config, SectionProxy, config

__all__ = ['Config', 'SectionProxy', 'config']
