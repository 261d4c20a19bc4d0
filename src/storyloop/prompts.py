from __future__ import annotations

from typing import Optional, Sequence

from storyloop.models import FixUpState, QualityCheckResult, StoryStatus, WorkItem

FIX_UP_OUTPUT_CHARS = 3000
LEARNING_OUTPUT_CHARS = 200
NOTE_CHECK_OUTPUT_CHARS = 500
NOTE_AGENT_OUTPUT_CHARS = 2000

SUCCESS_SUMMARY = "Completed successfully"

BASE_SYSTEM_PROMPT = """You are an autonomous AI agent implementing user stories for a software project.

## Instructions
1. Read the user story carefully, including all acceptance criteria
2. Implement the story completely and make all necessary code changes
3. Ensure every acceptance criterion is met
4. Follow existing project conventions and patterns
5. Write clean, well-structured code
6. Do NOT ask questions. Make reasonable decisions and document them
7. After implementation, the system will automatically run quality checks"""


def build_system_prompt(
    workspace_learnings: Sequence[tuple[str, str]] = (),
    override: Optional[str] = None,
) -> str:
    prompt = (override or "").strip() or BASE_SYSTEM_PROMPT
    if workspace_learnings:
        lines = [f"- {key}: {content}" for key, content in workspace_learnings]
        prompt += "\n\n## Project Memory\n" + "\n".join(lines)
    return prompt


def _fix_up_section(fix_up: FixUpState, max_fix_ups: int) -> str:
    lines = [
        "",
        "## FIX-UP PASS: Do Not Start Over",
        "Your previous attempt for this story is still in the working tree. "
        "Quality checks failed. Your job is to **fix the specific errors below**, "
        "not rewrite the implementation from scratch.",
    ]
    if fix_up.sub_attempts > 1:
        lines.append(
            f"This is fix-up attempt {fix_up.sub_attempts} of {max_fix_ups}; "
            "previous fixes did not resolve all issues."
        )
    for result in fix_up.last_results:
        lines.append("")
        lines.append(f"### Failed: {result.check_name} (exit code {result.exit_code})")
        output = result.output.strip()
        if output:
            lines.append("```")
            lines.append(output[:FIX_UP_OUTPUT_CHARS])
            lines.append("```")
    lines.append("")
    lines.append(
        "Fix these errors. Keep all working code intact. "
        "Do not restructure or rewrite unchanged files."
    )
    return "\n".join(lines)


def build_item_prompt(
    item: WorkItem,
    scope_items: Sequence[WorkItem],
    fix_up: Optional[FixUpState] = None,
    max_fix_ups: int = 2,
) -> str:
    """Build the prompt for one pass over ``item``.

    ``item.attempts`` is read after the item was marked in progress, so it
    already counts the current attempt.
    """
    criteria = "\n".join(
        f"{index}. {criterion}" for index, criterion in enumerate(item.acceptance_criteria, 1)
    )
    sections = [
        f"## User Story: {item.title}",
        "",
        item.description,
        "",
        "## Acceptance Criteria",
        criteria or "(none specified)",
        "",
    ]
    if fix_up is not None:
        sections.append(
            f"## Attempt {item.attempts} of {item.max_attempts}, "
            f"Fix-up {fix_up.sub_attempts} of {max_fix_ups}"
        )
        sections.append(_fix_up_section(fix_up, max_fix_ups))
    else:
        sections.append(f"## Attempt {item.attempts} of {item.max_attempts}")

    if item.learnings:
        sections.append("")
        sections.append("## Learnings from Previous Attempts")
        sections.extend(f"- {learning}" for learning in item.learnings)
        if fix_up is None:
            sections.append("")
            sections.append(
                "Please address these issues in this attempt. Do not repeat the same mistakes."
            )

    completed = [other for other in scope_items if other.status == StoryStatus.COMPLETED]
    remaining = [
        other
        for other in scope_items
        if other.status in (StoryStatus.PENDING, StoryStatus.IN_PROGRESS)
    ]
    sections.append("")
    sections.append("## Project Progress")
    sections.append(f"- Completed: {len(completed)} of {len(scope_items)} stories")
    sections.append(f"- Remaining: {len(remaining)} stories (including this one)")
    if completed:
        sections.append("")
        sections.append("Already completed:")
        sections.extend(f"- {other.title}" for other in completed)
    return "\n".join(sections)


def summarize_outcome(summary: str, results: Sequence[QualityCheckResult]) -> str:
    failed = [result for result in results if not result.passed]
    if not failed:
        return summary
    details = "; ".join(
        f"{result.check_name} ({result.output[:LEARNING_OUTPUT_CHARS]})" for result in failed
    )
    return f"{summary}. Failed checks: {details}"


def failure_reason(agent_error: Optional[str], results: Sequence[QualityCheckResult]) -> str:
    if agent_error:
        return f"Agent error: {agent_error}"
    names = ", ".join(result.check_name for result in results if result.blocking)
    return f"Quality checks failed: {names}"


def build_agent_note(
    item: WorkItem,
    loop_id: str,
    outcome: StoryStatus,
    agent_output: str,
    results: Sequence[QualityCheckResult],
    reason: Optional[str] = None,
) -> tuple[str, str]:
    """Return ``(title, markdown)`` for the per-attempt report kept with the item."""
    completed = outcome == StoryStatus.COMPLETED
    heading = "Completed" if completed else "Failed"
    sections = [f"# {heading}: {item.title}", ""]
    if item.description:
        sections.extend(["## Story Description", item.description, ""])
    sections.append("## Outcome")
    sections.append(f"- Status: {SUCCESS_SUMMARY if completed else 'Failed'}")
    sections.append(f"- Attempt: {item.attempts}/{item.max_attempts}")
    sections.append(f"- Loop: `{loop_id}`")
    sections.append("")
    if reason:
        sections.extend(["## Failure Reason", reason, ""])
    if results:
        sections.append("## Quality Check Results")
        for result in results:
            verdict = "Passed" if result.passed else "Failed"
            sections.append(
                f"- {result.check_name} ({result.check_type.value}): {verdict} in "
                f"{result.duration_ms}ms"
            )
            if not result.passed and result.output:
                excerpt = result.output[:NOTE_CHECK_OUTPUT_CHARS]
                if len(result.output) > NOTE_CHECK_OUTPUT_CHARS:
                    excerpt += "\n...(truncated)"
                sections.extend(["  ```", f"  {excerpt}", "  ```"])
        sections.append("")
    output = agent_output.strip()
    if output:
        excerpt = output[:NOTE_AGENT_OUTPUT_CHARS]
        if len(output) > NOTE_AGENT_OUTPUT_CHARS:
            excerpt += "\n...(truncated)"
        sections.extend(["## Agent Output Summary", "```", excerpt, "```", ""])
    return f"{heading}: {item.title}", "\n".join(sections).rstrip() + "\n"


def commit_message(item: WorkItem) -> str:
    lines = [f"[storyloop] {item.title}", "", "Implemented by storyloop."]
    if item.group_id:
        lines.append(f"Group: {item.group_id}")
    lines.append(f"Story: {item.id}")
    return "\n".join(lines)


def tracker_comment(item: WorkItem, outcome: str) -> str:
    if outcome == StoryStatus.COMPLETED.value:
        return f"Implemented automatically by storyloop. Commit: {item.commit_sha or 'N/A'}"
    return f"Automatic implementation failed after {item.attempts} attempt(s)."
