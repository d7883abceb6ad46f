from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from .config import Credentials, logger
from .mcp_config import remove_mcp_config, write_mcp_config
from .prompts import write_prompt_file
from .supervisor import SEPARATOR, AgentSupervisor, CancellationToken, RunOutcome


class ReviewError(Exception):
    """The review could not be prepared"""


@dataclass
class ReviewSession:
    """Everything one review run needs, owned by the caller."""

    change_number: str
    workspace: Path
    model: str = ""
    checked_out: bool = False
    cancel_token: CancellationToken = field(default_factory=CancellationToken)


def pointer_prompt(prompt_file: Path) -> str:
    return f"Read and follow {prompt_file}"


async def run_review(
    session: ReviewSession,
    credentials: Credentials,
    supervisor: AgentSupervisor,
    prompt_dir: Optional[Path] = None,
) -> RunOutcome:
    """Register the tool server, hand the agent its prompt and wait for the run to end.

    The MCP registration is removed again once the run is over.
    """
    logger.info(f"🎬 Starting AI review of change {session.change_number}")

    if not write_mcp_config(session.workspace, credentials):
        raise ReviewError("Failed to write MCP configuration.")

    try:
        prompt_file = write_prompt_file(session.change_number, session.checked_out, prompt_dir)

        supervisor.on_output(
            "=== Gerrit AI Review ===\n\n"
            f"Change: {session.change_number}\n"
            f"Model: {session.model or '(auto)'}\n\n"
            f"{SEPARATOR}\n\n"
        )
        outcome = await supervisor.run(
            pointer_prompt(prompt_file),
            model=session.model or None,
            cancel_token=session.cancel_token,
            artifacts=[prompt_file],
        )
    finally:
        remove_mcp_config(session.workspace)

    logger.info(f"🏁 Review of change {session.change_number} ended: {outcome.value}")
    return outcome
