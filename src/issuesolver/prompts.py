from __future__ import annotations

from issuesolver.feedback_loop import FeedbackGroup
from issuesolver.models import PullRequestDetails


def _changed_files_lines(pull_request: PullRequestDetails) -> str:
    lines: list[str] = []
    for changed in pull_request.files:
        lines.append(
            f"- {changed.path} ({changed.status}): +{changed.additions} -{changed.deletions}"
        )
        if changed.patch:
            lines.append(f"```diff\n{changed.patch}\n```")
    return "\n".join(lines)


def _summary_section(summary: str) -> str:
    if not summary:
        return ""
    return f"## {summary}\n"


def build_feedback_prompt(
    *,
    pull_request: PullRequestDetails,
    group: FeedbackGroup,
    summary: str,
) -> str:
    return f"""
You are a code reviewer and developer. You need to fix the code based on NEW PR review feedback and provide individual responses.

## Original PR Information
**Title:** {pull_request.title}
**Description:** {pull_request.body}
**PR URL:** {pull_request.html_url}

## Changed Files
{_changed_files_lines(pull_request)}

{_summary_section(summary)}{group.rendered}
## Instructions
1. Analyze the NEW feedback carefully (marked with COMMENT_X or REVIEW_X IDs)
2. Apply the necessary fixes to address each piece of feedback
3. After fixing, provide a brief response (1-3 sentences) for EACH comment/review explaining what you changed

## Response Format
IMPORTANT: After making your code changes, provide individual responses in this exact format:

For each COMMENT_X or REVIEW_X, include a section like:
```
COMMENT_1_RESPONSE:
Brief 1-3 sentence explanation of what you changed to address this comment.

COMMENT_2_RESPONSE:
Brief 1-3 sentence explanation of what you changed.
```

NOTE: Each response should end with a double newline (\\n\\n) to separate it from the next response.
The parser stops at the first double newline, so keep responses concise (1-3 sentences).

Now please:
1. Apply all the fixes to the code
2. Provide individual responses in the format shown above
""".strip()
