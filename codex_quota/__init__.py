"""
codex-quota - Multi-account OAuth manager for Codex and Claude
"""

from loguru import logger

__version__ = "0.1.0"
__logo__ = "◔"

logger.disable("codex_quota")
