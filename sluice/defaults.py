"""Built-in admissions templates and engine settings.

These mirror the institution defaults shipped with the admissions
application: an undergraduate and a graduate workflow, the permission keys
each role is granted, and the notification templates the stages refer to.
"""

from typing import Any, Iterable

from sluice.loader import load_template
from sluice.model import WorkflowTemplate

TRANSITION_PROCESSING_INTERVAL_MINUTES = 5
NOTIFICATION_DEFAULT_CHANNELS = ("email", "in_app")


def _stage(
    name: str,
    description: str,
    sequence: int,
    template: str | None = None,
    channels: tuple[str, ...] = NOTIFICATION_DEFAULT_CHANNELS,
    required_documents: Iterable[str] = (),
    required_actions: Iterable[str] = (),
    assigned_role_id: str | None = None,
    extra_triggers: Iterable[dict[str, Any]] = (),
) -> dict[str, Any]:
    triggers = []
    if template is not None:
        triggers.append(
            {"event": "stage_entry", "template": template, "channels": list(channels)}
        )
    triggers.extend(extra_triggers)
    stage: dict[str, Any] = {
        "name": name,
        "description": description,
        "sequence": sequence,
        "required_documents": list(required_documents),
        "required_actions": list(required_actions),
        "notification_triggers": triggers,
    }
    if assigned_role_id is not None:
        stage["assigned_role_id"] = assigned_role_id
    return stage


def _flag(field: str) -> list[dict[str, Any]]:
    return [{"field": field, "operator": "=", "value": True}]


def _auto(source: str, target: str, name: str, description: str, field: str) -> dict[str, Any]:
    return {
        "source": source,
        "target": target,
        "name": name,
        "description": description,
        "is_automatic": True,
        "conditions": _flag(field),
    }


def _manual(
    source: str, target: str, name: str, description: str, permission: str
) -> dict[str, Any]:
    return {
        "source": source,
        "target": target,
        "name": name,
        "description": description,
        "is_automatic": False,
        "required_permissions": [permission],
    }


_DOCUMENT_VERIFIED_TRIGGER = {
    "event": "document_verified",
    "template": "document_verified",
    "channels": ["in_app"],
}


def _opening_stages(documents: list[str]) -> list[dict[str, Any]]:
    return [
        _stage(
            "Draft",
            "Application is being prepared by the applicant",
            1,
            "welcome_to_application",
            channels=("email",),
        ),
        _stage(
            "Submitted",
            "Application has been submitted and is awaiting initial screening",
            2,
            "application_received",
            required_actions=["submit_application", "pay_application_fee"],
        ),
        _stage(
            "Document Verification",
            "Required documents are being verified",
            3,
            "documents_required",
            required_documents=documents,
            assigned_role_id="verification_team",
            extra_triggers=[_DOCUMENT_VERIFIED_TRIGGER],
        ),
    ]


def _closing_stages(first_sequence: int, decision_role: str) -> list[dict[str, Any]]:
    seq = first_sequence
    return [
        _stage(
            "Decision",
            "Final decision on the application",
            seq,
            assigned_role_id=decision_role,
        ),
        _stage(
            "Accepted",
            "Applicant has been accepted",
            seq + 1,
            "acceptance_notification",
            channels=("email", "in_app", "sms"),
        ),
        _stage(
            "Waitlisted",
            "Applicant has been placed on the waitlist",
            seq + 2,
            "waitlist_notification",
        ),
        _stage("Rejected", "Application has been rejected", seq + 3, "rejection_notification"),
        _stage(
            "Enrollment",
            "Accepted applicant has confirmed enrollment",
            seq + 4,
            "enrollment_confirmation",
            required_actions=["pay_enrollment_deposit"],
        ),
    ]


def _opening_transitions(after_documents: str) -> list[dict[str, Any]]:
    submit = {
        "source": "Draft",
        "target": "Submitted",
        "name": "Submit Application",
        "description": "Applicant submits their application",
        "is_automatic": False,
        "conditions": _flag("is_submitted"),
    }
    return [
        submit,
        _auto(
            "Submitted",
            "Document Verification",
            "Initial Screening Passed",
            "Application passes initial screening",
            "application_fee_paid",
        ),
        _auto(
            "Document Verification",
            after_documents,
            "Documents Verified",
            "All required documents have been verified",
            "all_documents_verified",
        ),
    ]


def _closing_transitions() -> list[dict[str, Any]]:
    decide = "make_admission_decision"
    return [
        _manual("Decision", "Accepted", "Accept", "Accept the applicant", decide),
        _manual("Decision", "Waitlisted", "Waitlist", "Place the applicant on the waitlist", decide),
        _manual("Decision", "Rejected", "Reject", "Reject the application", decide),
        _manual(
            "Waitlisted",
            "Accepted",
            "Accept from Waitlist",
            "Accept an applicant from the waitlist",
            decide,
        ),
        _manual(
            "Waitlisted",
            "Rejected",
            "Reject from Waitlist",
            "Reject an applicant from the waitlist",
            decide,
        ),
        _auto(
            "Accepted",
            "Enrollment",
            "Confirm Enrollment",
            "Applicant confirms enrollment by paying deposit",
            "enrollment_deposit_paid",
        ),
    ]


UNDERGRADUATE_TEMPLATE: dict[str, Any] = {
    "name": "Undergraduate Admissions",
    "description": "Standard workflow for undergraduate applications",
    "application_type": "undergraduate",
    "stages": [
        *_opening_stages(["transcript", "personal_statement", "recommendation_letters"]),
        _stage(
            "Under Review",
            "Application is being reviewed by the admissions committee",
            4,
            "application_under_review",
            assigned_role_id="admissions_committee",
        ),
        _stage(
            "Additional Information",
            "Additional information is required from the applicant",
            5,
            "additional_information_required",
            channels=("email", "in_app", "sms"),
            required_actions=["provide_additional_info"],
        ),
        *_closing_stages(6, "admissions_director"),
    ],
    "transitions": [
        *_opening_transitions("Under Review"),
        _manual(
            "Under Review",
            "Additional Information",
            "Request Information",
            "Request additional information from applicant",
            "request_additional_info",
        ),
        _auto(
            "Additional Information",
            "Under Review",
            "Information Provided",
            "Applicant has provided the requested information",
            "additional_info_provided",
        ),
        _manual(
            "Under Review",
            "Decision",
            "Review Complete",
            "Application review is complete",
            "complete_review",
        ),
        *_closing_transitions(),
    ],
}

GRADUATE_TEMPLATE: dict[str, Any] = {
    "name": "Graduate Admissions",
    "description": "Standard workflow for graduate applications",
    "application_type": "graduate",
    "stages": [
        *_opening_stages(
            [
                "transcript",
                "personal_statement",
                "recommendation_letters",
                "resume",
                "test_scores",
            ]
        ),
        _stage(
            "Department Review",
            "Application is being reviewed by the academic department",
            4,
            "department_review",
            assigned_role_id="department_reviewer",
        ),
        _stage(
            "Interview",
            "Applicant is scheduled for an interview",
            5,
            "interview_scheduled",
            channels=("email", "in_app", "sms"),
            required_actions=["complete_interview"],
            assigned_role_id="interview_committee",
        ),
        _stage(
            "Graduate Committee Review",
            "Application is being reviewed by the graduate committee",
            6,
            "committee_review",
            assigned_role_id="graduate_committee",
        ),
        *_closing_stages(7, "graduate_director"),
    ],
    "transitions": [
        *_opening_transitions("Department Review"),
        _manual(
            "Department Review",
            "Interview",
            "Schedule Interview",
            "Department requests an interview with the applicant",
            "schedule_interview",
        ),
        _manual(
            "Department Review",
            "Graduate Committee Review",
            "Forward to Committee",
            "Department forwards application to graduate committee",
            "forward_to_committee",
        ),
        _auto(
            "Interview",
            "Graduate Committee Review",
            "Interview Completed",
            "Applicant has completed the interview",
            "interview_completed",
        ),
        _manual(
            "Graduate Committee Review",
            "Decision",
            "Review Complete",
            "Graduate committee review is complete",
            "complete_committee_review",
        ),
        *_closing_transitions(),
    ],
}

DEFAULT_TEMPLATES = [UNDERGRADUATE_TEMPLATE, GRADUATE_TEMPLATE]

# permission key -> roles granted it
PERMISSION_ROLES: dict[str, list[str]] = {
    "view_workflow_editor": ["admin", "workflow_manager"],
    "edit_workflow": ["admin", "workflow_manager"],
    "activate_workflow": ["admin"],
    "make_admission_decision": ["admin", "admissions_director", "graduate_director"],
    "request_additional_info": [
        "admin",
        "admissions_committee",
        "department_reviewer",
        "graduate_committee",
    ],
    "complete_review": [
        "admin",
        "admissions_committee",
        "department_reviewer",
        "graduate_committee",
    ],
    "schedule_interview": ["admin", "department_reviewer", "graduate_committee"],
    "forward_to_committee": ["admin", "department_reviewer"],
    "complete_committee_review": ["admin", "graduate_committee"],
}

NOTIFICATION_TEMPLATES: dict[str, str] = {
    "welcome_to_application": "Welcome to Your Application",
    "application_received": "Application Received",
    "documents_required": "Documents Required for Your Application",
    "document_verified": "Document Verified",
    "application_under_review": "Your Application is Under Review",
    "additional_information_required": "Additional Information Required",
    "department_review": "Your Application is Being Reviewed by the Department",
    "interview_scheduled": "Interview Scheduled",
    "committee_review": "Your Application is Being Reviewed by the Committee",
    "acceptance_notification": "Congratulations! Your Application Has Been Accepted",
    "waitlist_notification": "Your Application Has Been Waitlisted",
    "rejection_notification": "Your Application Status",
    "enrollment_confirmation": "Enrollment Confirmation",
}


def permissions_for_roles(roles: Iterable[str]) -> frozenset[str]:
    """Resolve role ids to permission keys using the default grants."""
    roles = set(roles)
    return frozenset(p for p, granted in PERMISSION_ROLES.items() if roles & set(granted))


def default_templates(active: bool = True) -> list[WorkflowTemplate]:
    return [load_template(t, is_active=active) for t in DEFAULT_TEMPLATES]
