"""
LLM prompt templates for remediation advice.
"""
from pathlib import Path
from src.schemas import IdentitySummary


def load_prompt_template() -> str:
    """
    Load the remediation prompt template from its markdown file.

    Returns:
        str: The complete prompt template with placeholders
    """
    template_path = Path(__file__).parent / "remediation_prompt.md"

    try:
        with open(template_path, 'r', encoding='utf-8') as f:
            return f.read()
    except FileNotFoundError:
        raise FileNotFoundError(
            f"Prompt template not found at: {template_path}. "
            "Please ensure 'remediation_prompt.md' is in the same directory."
        )


def _bullets(items: list[str]) -> str:
    if not items:
        return "- (none)"
    return "\n".join(f"- {item}" for item in items)


def build_remediation_prompt(summary: IdentitySummary) -> str:
    """
    Builds the prompt asking the LLM for a least-privilege recommendation
    for one identity.

    Args:
        summary: IdentitySummary of the principal under review

    Returns:
        str: Complete formatted prompt ready for LLM
    """
    base_template = load_prompt_template()

    principal = summary.principal_display_name or summary.principal_id

    prompt = base_template.replace("{{PRINCIPAL}}", principal)
    prompt = prompt.replace("{{PRINCIPAL_TYPE}}", summary.principal_type or "unknown")
    prompt = prompt.replace("{{ACTIVITY_STATUS}}", str(summary.activity_status))
    prompt = prompt.replace("{{UNUSED_LIST}}", _bullets(summary.unused_permissions))
    prompt = prompt.replace(
        "{{UNASSIGNED_USED_LIST}}", _bullets(summary.unassigned_used_permissions)
    )

    return prompt
