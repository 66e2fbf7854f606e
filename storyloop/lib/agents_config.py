"""
Agent command configuration.

Loads agents.yaml to determine which CLI command runs the coding agent.
If no config file exists, returns defaults.

Templates support {variable_name} substitution:
- {prompt}: The brief. If present in the template it is passed as a CLI arg,
  otherwise the brief is passed via stdin.
- {repo}: Path to the repository the agent works in.
"""

import logging
import re
import shlex
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import yaml

logger = logging.getLogger(__name__)


DEFAULT_STAGE_COMMANDS = {
    "implement": "claude --dangerously-skip-permissions --print --output-format json",
    # Brief via stdin; JSON output carries the usage block we record
}


@dataclass
class AgentsConfig:
    """Agent configuration from agents.yaml."""
    stages: dict[str, str] = field(default_factory=lambda: DEFAULT_STAGE_COMMANDS.copy())


def load_agents_config(project_dir: Optional[Path]) -> AgentsConfig:
    """Load agents.yaml and return AgentsConfig.

    If project_dir is None or file doesn't exist, returns defaults.
    """
    if project_dir is None:
        return AgentsConfig()

    config_path = project_dir / "agents.yaml"
    if not config_path.exists():
        return AgentsConfig()

    try:
        data = yaml.safe_load(config_path.read_text())
        stages = DEFAULT_STAGE_COMMANDS.copy()
        if data and "stages" in data:
            stages.update(data["stages"])
        return AgentsConfig(stages=stages)
    except (yaml.YAMLError, AttributeError, TypeError) as e:
        logger.warning(f"Failed to parse {config_path}: {e}")
        return AgentsConfig()


@dataclass
class StageCommand:
    """Result of building a stage command."""
    cmd: list[str]
    prompt_via_stdin: bool
    output_format: str | None  # "json" if --output-format json, else None

    def get_stdin_input(self, prompt: str) -> str | None:
        """Return prompt if it should be passed via stdin, else None."""
        return prompt if self.prompt_via_stdin else None


def get_stage_command(
    config: AgentsConfig,
    stage: str,
    context: dict[str, str] | None = None,
) -> StageCommand:
    """Build command list for a stage with variable substitution.

    Raises:
        ValueError: If stage is unknown.

    Example:
        >>> result = get_stage_command(AgentsConfig(), "implement", {"prompt": "do stuff"})
        >>> result.prompt_via_stdin
        True
    """
    if stage not in config.stages:
        raise ValueError(f"Unknown stage: {stage}")

    cmd_template = config.stages[stage]
    prompt_via_stdin = "{prompt}" not in cmd_template

    output_format = None
    template_parts = shlex.split(cmd_template.replace("{prompt}", "X").replace("{repo}", "/tmp"))
    for i, part in enumerate(template_parts):
        if part == "--output-format" and i + 1 < len(template_parts):
            output_format = template_parts[i + 1]
            break
        if part.startswith("--output-format="):
            output_format = part.split("=", 1)[1]
            break

    # Swap the prompt for a placeholder so shlex never sees its quotes
    prompt_value = None
    if context and "prompt" in context:
        prompt_value = context["prompt"]
        cmd_template = cmd_template.replace("{prompt}", "__PROMPT_PLACEHOLDER__")

    if context:
        for key, value in context.items():
            if key != "prompt":
                cmd_template = cmd_template.replace(f"{{{key}}}", value)

    remaining_vars = re.findall(r'\{(\w+)\}', cmd_template)
    if remaining_vars:
        logger.error(
            f"Stage '{stage}' has unsubstituted variables: {remaining_vars}. "
            f"Template: {cmd_template}"
        )

    cmd = shlex.split(cmd_template)
    if prompt_value is not None:
        cmd = [prompt_value if arg == "__PROMPT_PLACEHOLDER__" else arg for arg in cmd]

    return StageCommand(
        cmd=cmd,
        prompt_via_stdin=prompt_via_stdin,
        output_format=output_format,
    )


def check_binary_available(config: AgentsConfig, stage: str) -> bool:
    """Check the binary for a stage (first word of its command) is in PATH."""
    if stage not in config.stages:
        raise ValueError(f"Unknown stage: {stage}")
    parts = shlex.split(config.stages[stage])
    return bool(parts) and shutil.which(parts[0]) is not None
