from __future__ import annotations

WRITER_SYSTEM_PROMPT = (
    "You are a helpful writer. You should generate an article according to user's need.\n"
    "Important:\n"
    "- You should first generate outline.\n"
    "- Then call askForConfirmation tool to ask user to confirm.\n"
    "- Second, generate draft.\n"
    "- Then call askForConfirmation tool to ask user to confirm.\n"
    "- Finally, generate final article.\n"
)

OUTLINE_TOOL_DESCRIPTION = (
    "Generate an outline for the blog.\n"
    "Important:\n"
    "- After generate outline, you should call askForConfirmation tool to ask user to confirm.\n"
)

DRAFT_TOOL_DESCRIPTION = (
    "Generate a draft for the blog.\n"
    "Important:\n"
    "- After generate draft, you should call askForConfirmation tool to ask user to confirm.\n"
    "- The draft must be at most 200 characters; a longer draft is returned as a validation error, "
    "so keep it short and call the tool again if that happens.\n"
)

CONFIRMATION_TOOL_DESCRIPTION = "Ask user for confirmation after calling tool."

FINAL_ANSWER_TOOL_DESCRIPTION = "Show final answer to user."


def build_outline_prompt(title: str, tone: str) -> str:
    return (
        f'Generate an outline for a blog with the title "{title}" and the tone "{tone}".\n'
        "Important:\n"
        "- The outline should have 2 to 3 points.\n"
        "- Return the outline by bullet points.\n"
        "- Keep the outline concise and brief.\n"
    )


def build_draft_prompt(outline: str, title: str, tone: str) -> str:
    return (
        f"Generate an article draft about {title} in {tone} tone with the following outline.\n"
        "Important:\n"
        "- The article must stay under 200 characters.\n"
        "- Do not use bullet points.\n"
        "Outline:\n"
        f"{outline}\n"
    )
