# type: ignore
# pyright: reportMissingImports=false, reportGeneralTypeErrors=false
"""Message templates with ``{{placeholder}}`` substitution."""
import re
from typing import Any, Dict, NamedTuple

from bmm_registration.models.domain import TemplateKind

PLACEHOLDER = re.compile(r"\{\{\s*(\w+)\s*\}\}")


class RenderedMessage(NamedTuple):
    subject: str
    body: str


DEFAULT_TEMPLATES: Dict[TemplateKind, tuple] = {
    TemplateKind.INVITATION: (
        "BMM {{year}} - Register your venue preference",
        "Dear {{name}},\n\n"
        "You are invited to the {{year}} Biennial Membership Meeting.\n"
        "Please tell us which venue you would like to attend in the {{region}} region:\n\n"
        "{{registrationLink}}\n\n"
        "Membership number: {{membershipNumber}}\n\n"
        "Best regards,\nETU Team",
    ),
    TemplateKind.ATTENDANCE_REQUEST: (
        "BMM {{year}} - Please confirm your attendance",
        "Dear {{name}},\n\n"
        "You have been allocated to the following BMM meeting:\n\n"
        "Venue: {{venue}}\nDate & Time: {{dateTime}}\n\n"
        "Please confirm whether you will attend.\n\n"
        "Best regards,\nETU Team",
    ),
    TemplateKind.TICKET: (
        "BMM {{year}} - Your meeting ticket",
        "Dear {{name}},\n\n"
        "Your BMM meeting ticket is ready:\n\n"
        "Venue: {{venue}}\nDate & Time: {{dateTime}}\nTicket ID: {{ticketToken}}\n\n"
        "Download your ticket: {{ticketLink}}\n\n"
        "Best regards,\nETU Team",
    ),
    TemplateKind.SPECIAL_VOTE: (
        "BMM {{year}} - Special vote",
        "Dear {{name}},\n\n"
        "We were unable to allocate you a seat at a BMM meeting in the {{region}} region.\n"
        "You are eligible to cast a special vote instead. We will send the voting "
        "details to you separately.\n\n"
        "Membership number: {{membershipNumber}}\n\n"
        "Best regards,\nETU Team",
    ),
}


def render_text(template: str, context: Dict[str, Any]) -> str:
    """Replace known placeholders; unknown ones render as empty strings."""
    return PLACEHOLDER.sub(lambda m: str(context.get(m.group(1)) or ""), template)


def render(kind: TemplateKind, context: Dict[str, Any]) -> RenderedMessage:
    subject, body = DEFAULT_TEMPLATES[kind]
    return RenderedMessage(render_text(subject, context), render_text(body, context))
