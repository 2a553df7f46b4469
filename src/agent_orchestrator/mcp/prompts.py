"""MCP prompt templates for common workflows."""

from agent_orchestrator.mcp.server import mcp


@mcp.prompt()
def review_task(task_id: str) -> str:
    """Generate a prompt to review the changes an agent task produced."""
    return (
        f"Please review the work done for agent task '{task_id}'.\n\n"
        f"Use get_task to see the repositories and their status, then get_diff for each "
        f"repository that finished.\n"
        f"Then provide:\n"
        f"1. Summary of changes made in each repository\n"
        f"2. Whether the prompt's goals appear to be met\n"
        f"3. Any issues or concerns\n"
        f"4. Whether it's ready to promote (commit, push and open a PR)"
    )


@mcp.prompt()
def dispatch_agents(goal: str, repos: str = "") -> str:
    """Generate a prompt to run a coding agent against one or more repositories."""
    target = f" in these repositories: {repos}" if repos else " in the default workspace"
    return (
        f"I want an agent to work on the following goal{target}.\n\n"
        f"{goal}\n\n"
        f"Please:\n"
        f"1. Use create_task with a clear prompt and a short title\n"
        f"2. Use get_task to follow progress until the task is no longer running\n"
        f"3. Use get_diff to inspect what changed in each repository\n"
        f"4. Summarize the result and ask me before calling promote"
    )
