"""Generated text: the agent brief, commit message and review request."""

from storyloop.lib.prompts import build_section, render_prompt
from storyloop.lib.types import WorkItem


def item_section(item: WorkItem) -> str:
    lines = [f"## Item: {item.id}", f"**Title:** {item.title}", ""]
    if item.intent:
        lines += [f"**Intent:** {item.intent}", ""]
    if item.description:
        lines += ["**Description:**", item.description, ""]
    lines.append("**Acceptance Criteria:**")
    lines += [f"- {ac}" for ac in item.acceptance] or ["- (none given)"]
    return "\n".join(lines) + "\n"


def build_brief(
    item: WorkItem,
    branch: str,
    attempt: int,
    clarification: str | None = None,
    feedback: str | None = None,
    external_deps_report: str | None = None,
    previous_failure: str | None = None,
) -> str:
    """Render the implement brief with whichever context sections apply."""
    failure = None
    if previous_failure:
        failure = (
            f"The previous attempt failed with: {previous_failure}\n"
            "Address this issue in your implementation."
        )

    extra_context = "".join([
        build_section(clarification, "\n## Clarification"),
        build_section(feedback, "\n## Feedback from Code Review"),
        build_section(external_deps_report, "\n## External Dependencies Report"),
        build_section(failure, "\n## Previous Failure"),
    ])

    return render_prompt(
        "implement",
        item_id=item.id,
        branch=branch,
        attempt=attempt,
        item_section=item_section(item),
        extra_context=extra_context,
    )


def commit_message(item: WorkItem) -> str:
    return f"feat({item.id}): {item.title}"


def review_title(item: WorkItem) -> str:
    return f"[{item.id}] {item.title}"


def review_body(item: WorkItem) -> str:
    checklist = "\n".join(f"- [ ] {ac}" for ac in item.acceptance)
    return f"## {item.title}\n\n{item.intent}\n\n### Acceptance Criteria\n{checklist}"
