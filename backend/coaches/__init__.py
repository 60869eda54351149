"""
GymSight Coaching

FormCoach - AI-powered form check: one camera frame + exercise name in,
a Verdict (form correct?, feedback text) out.
"""

from .form_coach import FormCoach, RemoteAnalysisError, Verdict

__all__ = ["FormCoach", "RemoteAnalysisError", "Verdict"]
