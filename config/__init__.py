from .config_loader import Config, SectionProxy, load_config
from .utils import get_config_section

__all__ = ['Config', 'SectionProxy', 'load_config', 'get_config_section']
