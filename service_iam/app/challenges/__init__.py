from .workflows import (
    Challenge,
    ChallengeKind,
    ChallengeWorkflow,
    InvitationService,
    ProfileVerificationService,
)

__all__ = [
    "Challenge",
    "ChallengeKind",
    "ChallengeWorkflow",
    "InvitationService",
    "ProfileVerificationService",
]
