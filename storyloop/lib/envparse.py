"""
Safe .env file parser.

Parses KEY=value files without shell execution.
Rejects dangerous patterns that could enable injection, since values
such as AGENT_COMMAND end up on a subprocess command line.
"""

import os
import re
from pathlib import Path

FORBIDDEN_PATTERNS = [
    r'`',           # backticks
    r'\$\(',        # command substitution
    r'\$\{',        # variable expansion
    r';',           # command chaining
    r'&&',          # AND chaining
    r'\|\|',        # OR chaining
    r'\|',          # pipe
]

KEY_PATTERN = re.compile(r'^[A-Z][A-Z0-9_]*$')

# Environment variables with this prefix override file values
ENV_OVERRIDE_PREFIX = "STORYLOOP_"


def parse_env_text(text: str) -> dict[str, str]:
    """
    Parse env-file text, return dict.

    Raises:
        ValueError: if syntax invalid or forbidden pattern found
    """
    result = {}

    for lineno, line in enumerate(text.splitlines(), 1):
        line = line.strip()

        if not line or line.startswith('#'):
            continue

        if '=' not in line:
            raise ValueError(f"Line {lineno}: Invalid syntax (no '=')")

        key, _, value = line.partition('=')
        key = key.strip()
        value = value.strip()

        if not KEY_PATTERN.match(key):
            raise ValueError(f"Line {lineno}: Invalid key '{key}'")

        # Strip quotes if present
        if len(value) >= 2:
            if (value.startswith('"') and value.endswith('"')) or \
               (value.startswith("'") and value.endswith("'")):
                value = value[1:-1]

        for pattern in FORBIDDEN_PATTERNS:
            if re.search(pattern, value):
                raise ValueError(f"Line {lineno}: Forbidden pattern in value for {key}")

        result[key] = value

    return result


def load_env(filepath: str | Path, environ: dict[str, str] | None = None) -> dict[str, str]:
    """
    Parse env file safely and apply STORYLOOP_* overrides from the environment.

    A missing file is not an error: the overrides alone are returned, so a
    runner can be configured purely from the environment.

    Raises:
        ValueError: if syntax invalid or forbidden pattern found
    """
    path = Path(filepath)
    result = parse_env_text(path.read_text()) if path.exists() else {}

    environ = os.environ if environ is None else environ
    for name, value in environ.items():
        if name.startswith(ENV_OVERRIDE_PREFIX):
            key = name[len(ENV_OVERRIDE_PREFIX):]
            if KEY_PATTERN.match(key):
                result[key] = value

    return result
