from __future__ import annotations

import logging
from pathlib import Path

logger = logging.getLogger("concierge.prompt")


def load_prompt(prompt_path: Path) -> str:
    """Purpose: Read the concierge policy template from disk.
    Inputs/Outputs: Input is the path of a prompt file; output is its text without a
        leading BOM.
    Side Effects / State: Reads the filesystem once per call.
    Dependencies: Path.read_text; called by PromptComposer at startup.
    Failure Modes: A missing file raises FileNotFoundError. Undecodable bytes are
        dropped with a warning instead of failing startup.
    If Removed: The composer has no brand or safety policy to prepend.
    Testing Notes: A file saved with a BOM must not leak "\\ufeff" into the prompt.
    """
    # Editors on Windows tend to save the policy with a BOM.
    try:
        return prompt_path.read_text(encoding="utf-8").lstrip("\ufeff")
    except UnicodeDecodeError:
        logger.warning("prompt file=%s decode=lossy", prompt_path.name)
        return prompt_path.read_bytes().decode("utf-8", errors="ignore").lstrip("\ufeff")
