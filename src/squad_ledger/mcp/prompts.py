"""MCP prompt templates for common workflows."""

from squad_ledger.mcp.server import mcp


@mcp.prompt()
def status_report(project: str) -> str:
    """Generate a prompt for a project status report."""
    return (
        f"Please generate a status report for the '{project}' project.\n\n"
        f"Use project_stats for the numbers and list_tasks for the details, then provide:\n"
        f"1. Overall progress (completion percentage, tasks done vs total)\n"
        f"2. Tasks currently in progress and who holds them\n"
        f"3. Tasks that are blocked, and which dependencies block them\n"
        f"4. Ready tasks (get_ready_tasks) worth starting next\n"
        f"5. Token and cost usage against budget"
    )


@mcp.prompt()
def review_workflow(workflow_id: str) -> str:
    """Generate a prompt to review how agents interacted in a workflow."""
    return (
        f"Please review the agent interactions in workflow '{workflow_id}'.\n\n"
        f"Use get_workflow_timeline to read the interactions in order, "
        f"interaction_stats with this workflow_id for the totals, and "
        f"get_interaction_chain on any failed interaction to see how it came about.\n"
        f"Then provide:\n"
        f"1. A short narrative of what happened\n"
        f"2. Failed, cancelled or timed-out interactions and likely causes\n"
        f"3. Interactions still pending\n"
        f"4. Places where a user intervention changed the course"
    )
