"""
Client-facing message templates for workflow notifications.
"""

from dataclasses import dataclass
from typing import Any

from clinicflow.models.referral import Referral
from clinicflow.workflow.states import ClientState

CLIENT_STATE_NAMES = {
    ClientState.PROSPECTIVE: "Pre-Staging",
    ClientState.PENDING: "Pending Assignment",
    ClientState.ACTIVE: "Active Treatment",
    ClientState.INACTIVE: "Completed/Closed",
}

CLIENT_STATE_MESSAGES = {
    ClientState.PROSPECTIVE: "We are currently reviewing your referral and gathering necessary information.",
    ClientState.PENDING: (
        "We are working to match you with an appropriate therapist. "
        "We'll notify you once a match is found."
    ),
    ClientState.ACTIVE: "Your treatment has begun! Your therapist will be in touch regarding ongoing sessions.",
    ClientState.INACTIVE: "Your referral has been closed. Thank you for working with us.",
}


@dataclass(frozen=True)
class Message:
    to: str
    subject: str
    body: str
    type: str

    def to_dict(self) -> dict[str, Any]:
        return {"to": self.to, "subject": self.subject, "body": self.body, "type": self.type}


def state_change_message(referral: Referral, old_state: ClientState, new_state: ClientState) -> Message:
    body = "\n".join(
        [
            f"Hello {referral.client_name},",
            "",
            "Your referral status has been updated:",
            "",
            f"Previous Status: {CLIENT_STATE_NAMES[old_state]}",
            f"New Status: {CLIENT_STATE_NAMES[new_state]}",
            "",
            CLIENT_STATE_MESSAGES[new_state],
        ]
    )
    return Message(
        to=referral.client_email or "",
        subject="Your referral status has been updated",
        body=body,
        type="state_change",
    )


def package_ready_message(recipient: str, package_name: str, download_url: str, expires_at) -> Message:
    """Message for the clinical team; carries the signed URL, so never log it."""
    body = "\n".join(
        [
            f"Intake package {package_name} is ready for retrieval.",
            "",
            f"Download link (expires {expires_at.isoformat()}):",
            download_url,
            "",
            "The package is encrypted; decrypt it in the clinical system only.",
        ]
    )
    return Message(
        to=recipient,
        subject=f"Intake package ready: {package_name}",
        body=body,
        type="package_ready",
    )
