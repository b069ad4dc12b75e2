"""
Pre-built sequences tenants can start from.

Each template is a plain dict in the stored definition format, turned into a
validated SequenceDefinition by get_template(). Placeholders use the
contact's fields ({{first_name}}, {{company}}) and campaign variables
({{value_proposition}}, {{sender_name}}).
"""

import copy
from typing import Dict, List

from sequencer.rate_limits import CONNECTION_REQUEST
from sequencer.sequences import END, SequenceDefinition

STOP_IF_REPLIED = {"outcome": "replied", "on_skip": END}

COLD_EMAIL = {
    "id": "cold-outreach-basic",
    "name": "Cold Outreach + 3 Follow-ups",
    "platforms": ["email"],
    "steps": [
        {
            "id": "initial",
            "kind": "send",
            "channel": "email",
            "name": "Initial Outreach",
            "subject": "Quick question about {{company}}",
            "body": (
                "Hi {{first_name}},\n\n"
                "I noticed {{company}} is {{trigger_event}}.\n\n"
                "{{value_proposition}}\n\n"
                "Worth a quick chat?\n\n"
                "Best,\n{{sender_name}}"
            ),
            "business_hours": True,
        },
        {"id": "wait-1", "kind": "wait", "name": "Wait 3 days", "delay": {"delay": 3, "unit": "days"}},
        {
            "id": "followup-1",
            "kind": "send",
            "channel": "email",
            "name": "Follow-up 1",
            "subject": "Re: Quick question about {{company}}",
            "body": (
                "Hi {{first_name}},\n\n"
                "Just following up on my previous email.\n\n"
                "{{follow_up_hook}}\n\n"
                "Is this something you're exploring?\n\n"
                "{{sender_name}}"
            ),
            "condition": STOP_IF_REPLIED,
            "business_hours": True,
        },
        {"id": "wait-2", "kind": "wait", "name": "Wait 4 days", "delay": {"delay": 4, "unit": "days"}},
        {
            "id": "followup-2",
            "kind": "send",
            "channel": "email",
            "name": "Follow-up 2",
            "subject": "Re: Quick question about {{company}}",
            "body": (
                "Hi {{first_name}},\n\n"
                "{{case_study}}\n\n"
                "Happy to share how this could work for {{company}}.\n\n"
                "{{sender_name}}"
            ),
            "condition": STOP_IF_REPLIED,
            "business_hours": True,
        },
        {"id": "wait-3", "kind": "wait", "name": "Wait 7 days", "delay": {"delay": 7, "unit": "days"}},
        {
            "id": "breakup",
            "kind": "send",
            "channel": "email",
            "name": "Break-up Email",
            "subject": "Should I close your file?",
            "body": (
                "Hi {{first_name}},\n\n"
                "I haven't heard back, so I'm assuming this isn't a priority right now.\n\n"
                "I'll close your file for now, but feel free to reach out if things change.\n\n"
                "Best,\n{{sender_name}}"
            ),
            "condition": STOP_IF_REPLIED,
            "business_hours": True,
        },
    ],
}

LINKEDIN_CONNECT = {
    "id": "linkedin-outreach",
    "name": "LinkedIn Connection + Message Sequence",
    "platforms": ["linkedin"],
    "steps": [
        {
            "id": "connect",
            "kind": "send",
            "channel": "linkedin",
            "action": CONNECTION_REQUEST,
            "name": "Send Connection Request",
            "body": (
                "Hi {{first_name}}, I see we're both in {{industry}}. "
                "Would love to connect and share insights about {{common_interest}}."
            ),
        },
        {"id": "wait-accept", "kind": "wait", "name": "Wait for acceptance", "delay": {"delay": 2, "unit": "days"}},
        {
            "id": "check-accepted",
            "kind": "branch",
            "channel": "linkedin",
            "name": "Check if connected",
            "branches": [["replied", END], ["accepted", "welcome"], ["none", END]],
        },
        {
            "id": "welcome",
            "kind": "send",
            "channel": "linkedin",
            "name": "Send Welcome Message",
            "delay": {"delay": 1, "unit": "hours"},
            "body": (
                "Thanks for connecting, {{first_name}}!\n\n"
                "{{value_proposition}}\n\n"
                "Would you be open to a quick call?"
            ),
        },
        {"id": "wait-followup", "kind": "wait", "name": "Wait 3 days", "delay": {"delay": 3, "unit": "days"}},
        {
            "id": "followup",
            "kind": "send",
            "channel": "linkedin",
            "name": "Follow-up Message",
            "body": "Hi {{first_name}}, circling back on my last note. Any thoughts?",
            "condition": STOP_IF_REPLIED,
        },
    ],
}

MULTI_CHANNEL = {
    "id": "multi-channel-outreach",
    "name": "Multi-Channel Outreach",
    "platforms": ["email", "linkedin"],
    "steps": [
        {
            "id": "email-1",
            "kind": "send",
            "channel": "email",
            "name": "Initial Email",
            "subject": "Quick question {{first_name}}",
            "body": "Hi {{first_name}},\n\n{{value_proposition}}\n\nBest,\n{{sender_name}}",
            "business_hours": True,
        },
        {"id": "wait-1", "kind": "wait", "name": "Wait 2 days", "delay": {"delay": 2, "unit": "days"}},
        {
            "id": "linkedin-connect",
            "kind": "send",
            "channel": "linkedin",
            "action": CONNECTION_REQUEST,
            "name": "LinkedIn Connection",
            "body": "Sent you an email about {{topic}} - connecting here as well.",
            "condition": STOP_IF_REPLIED,
        },
        {"id": "wait-2", "kind": "wait", "name": "Wait 3 days", "delay": {"delay": 3, "unit": "days"}},
        {
            "id": "email-2",
            "kind": "send",
            "channel": "email",
            "name": "Follow-up Email",
            "subject": "Re: Quick question {{first_name}}",
            "body": "Hi {{first_name}},\n\nDid you get a chance to look at my note?\n\n{{sender_name}}",
            "condition": STOP_IF_REPLIED,
            "business_hours": True,
        },
    ],
}

TEMPLATES: Dict[str, Dict] = {
    t["id"]: t for t in (COLD_EMAIL, LINKEDIN_CONNECT, MULTI_CHANNEL)
}


def list_templates() -> List[Dict]:
    return [
        {"id": t["id"], "name": t["name"], "platforms": list(t["platforms"]), "steps": len(t["steps"])}
        for t in TEMPLATES.values()
    ]


def get_template(template_id: str, sequence_id: str = None) -> SequenceDefinition:
    """Validated copy of a template, optionally under a tenant's own sequence id."""
    if template_id not in TEMPLATES:
        raise KeyError(f"Unknown template: {template_id}")
    data = copy.deepcopy(TEMPLATES[template_id])
    if sequence_id:
        data["id"] = sequence_id
    return SequenceDefinition.from_dict(data)
