"""
Review prompt for the Gerrit AI review agent.
The prompt is rendered from a small template and written to a temporary
Markdown file that the agent is asked to read and follow.
"""
import json
import re
import time
from pathlib import Path
from typing import Any, Dict, Optional, Union

from .config import get_temp_path, logger

PROMPT_FILE_PREFIX = "gerrit-ai-review-"

REVIEW_PROMPT_TEMPLATE = """
# Gerrit Code Review Instructions

## Role

You are a senior software engineer reviewing Gerrit change **{{changeNumber}}**.
Give precise, constructive, actionable feedback and keep it to the issues that matter.

## Efficiency Rules

1. Never call the same MCP tool with the same arguments twice; reuse earlier results.
2. Gather everything first (steps 1-5), then analyze, then post. Do not interleave fetching and posting.
3. Only call the gerrit_* tools listed below. No other changes, no project browsing.
4. Aim to finish within two minutes; small changes should take seconds.

## Steps

### Step 1: Change metadata

Call `gerrit_get_change` with `{"changeNumber": "{{changeNumber}}"}`.
Read the commit message carefully, you will evaluate it later.

### Step 2: Changed files

Call `gerrit_get_changed_files` with `{"changeNumber": "{{changeNumber}}"}`.

### Step 3: File contents

{{#if checkedOut}}
The change is checked out in the local workspace. Read the changed files from disk and do
not call `gerrit_get_file_content`. Look at neighbouring files to learn the repository's
patterns and conventions.
{{/if}}
{{#unless checkedOut}}
For each changed file call `gerrit_get_file_content` with
`{"changeNumber": "{{changeNumber}}", "filePath": "<path from step 2>"}`.
{{/unless}}

Read every changed file. On large changes prioritize real source files over configuration,
tests and generated code.

### Step 4: Existing comments

Call `gerrit_get_comments` with `{"changeNumber": "{{changeNumber}}"}` and note each
comment's file, line, topic and ID.

If an issue you found is already discussed in an existing thread (same file, same or related
issue), reply to that thread with `gerrit_reply_to_comment` instead of opening a new one.

### Step 5: Existing drafts

Call `gerrit_get_draft_comments` with `{"changeNumber": "{{changeNumber}}"}` and do not
duplicate any draft already there.

### Step 6: Post draft comments

For new issues call `gerrit_post_draft_comment`:

```json
{"changeNumber": "{{changeNumber}}", "filePath": "path/to/file", "line": 42, "message": "...", "unresolved": true}
```

- Set `unresolved` to `true` for issues.
- Omit `line` for file-level comments.
- Use `filePath` = `"/PATCHSET_LEVEL"` without a line for patchset-level comments such as
  commit message feedback.
- Only comment on lines changed in this patchset.

### Step 7: Reply to existing threads

You are an additional reviewer, not the change author. Do not reply just to agree or repeat
a point. Reply only with substantive input, using `gerrit_reply_to_comment`:

```json
{"changeNumber": "{{changeNumber}}", "filePath": "path/to/file", "message": "...", "inReplyTo": "<comment-id>"}
```

## Review Criteria

In order of importance: correctness, security, performance, design, consistency with the
repository's conventions, behaviour at scale, error handling.

Skip minor style preferences, trivial formatting, clearly intentional choices and topics
already under discussion.

## Commit Message

Check that it says what changed and why, follows the project's conventions and has no typos.
Only if it needs work, post a patchset-level comment starting with `Commit message:`.

## Comment Guidelines

- Only real issues; never post "LGTM" or similar.
- Usually 3-15 comments, more only when genuinely needed.
- One or two actionable sentences per comment.
- An empty review is a valid outcome.

## Project Guidelines

If `.gerrit-review-prompt.md` exists in the workspace root, read it and follow it as well.

## Important

- Post all feedback through the MCP tools; do not print your analysis.
- Do not ask the user questions and do not modify workspace files.
- Make no Gerrit calls beyond the steps above.
"""


def _substitute_template(template: str, arguments: Dict[str, Any]) -> str:
    """Substitute arguments into the template using simple variable replacement."""

    # Handle {{#if var}}...{{/if}} and {{#unless var}}...{{/unless}} blocks
    def replace_conditional(match):
        keyword, var_name, content = match.group(1), match.group(2), match.group(3)
        enabled = bool(arguments.get(var_name))
        if keyword == "unless":
            enabled = not enabled
        return content.strip() if enabled else ""

    result = re.sub(
        r'\{\{#(if|unless)\s+(\w+)\}\}(.*?)\{\{/\1\}\}',
        replace_conditional,
        template,
        flags=re.DOTALL,
    )

    # Handle {{var}} simple variables
    def replace_variable(match):
        value = arguments.get(match.group(1), '')
        if isinstance(value, (list, dict)):
            return json.dumps(value)
        return str(value)

    result = re.sub(r'\{\{(\w+)\}\}', replace_variable, result)

    # Collapse the blank lines left behind by disabled blocks
    result = re.sub(r'\n{3,}', '\n\n', result)
    return result.strip() + "\n"


def build_review_prompt(change_number: str, checked_out: bool = False) -> str:
    return _substitute_template(
        REVIEW_PROMPT_TEMPLATE,
        {"changeNumber": change_number, "checkedOut": checked_out},
    )


def write_prompt_file(
    change_number: str,
    checked_out: bool = False,
    directory: Optional[Union[str, Path]] = None,
) -> Path:
    """Write the review prompt to a temp Markdown file and return its path.

    The caller owns the file and is responsible for deleting it.
    """
    filename = f"{PROMPT_FILE_PREFIX}{int(time.time() * 1000)}.md"
    path = Path(directory) / filename if directory else Path(get_temp_path(filename))
    prompt = build_review_prompt(change_number, checked_out)
    path.write_text(prompt, encoding="utf-8")
    logger.info(f"📝 Wrote review prompt to {path} ({len(prompt)} chars)")
    return path
