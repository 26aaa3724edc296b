# lensroom/base_utils.py

import logging
import re

logger = logging.getLogger("lensroom_infer")

_ANSI = {
    "red": "31", "green": "32", "yellow": "33", "blue": "34", "magenta": "35", "cyan": "36",
    "bright_red": "91", "bright_green": "92", "bright_yellow": "93", "bright_cyan": "96",
}


class BaseUtils():

    # -----------------------
    # Log helpers
    # -----------------------

    def color_print(self, text, color=None):
        """Highlight a log line (failures red, degraded paths yellow). Always returns False."""
        code = _ANSI.get((color or "").lower())
        line = str(text)
        logger.info(f"\033[{code}m{line}\033[0m" if code else line)
        return False

    def short(self, text, limit=100) -> str:
        """Log-safe preview of user text."""
        text = "" if text is None else str(text)
        return text if len(text) <= limit else text[:limit] + "..."

    def clean_triple_backticks(self, code) -> str:
        pattern = r'```[a-zA-Z]*\n?|```\n?'
        return re.sub(pattern, '', code)
