"""Request/response surface for the transport layer.

Every response carries ``success``. Failures carry a fixed message that is safe
to show to an end user; the underlying error goes to the log only.
"""

from __future__ import annotations

import logging
from dataclasses import asdict
from typing import Any, Dict, Optional

from .errors import CalmWaveError, ValidationError
from .models import EmotionalState, FinalEmotionalState, TherapeuticMetrics
from .orchestrator import SessionOrchestrator

logger = logging.getLogger("calmwave")

START_FAILED = "Failed to start session, please try again."
COMPLETE_FAILED = "Failed to save your session, please try again."
CONTEXT_FAILED = "Failed to load your history, please try again."
DASHBOARD_FAILED = "Failed to load your dashboard, please try again."
INVALID_REQUEST = "Some of the session details were invalid, please check them and try again."


def _failure(message: str) -> Dict[str, Any]:
    return {"success": False, "error": message}


def _mapping(value: Any, name: str) -> Dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ValidationError(f"{name} must be a mapping.")
    return value


class SessionEventService:
    def __init__(self, orchestrator: SessionOrchestrator) -> None:
        self.orchestrator = orchestrator

    def _guard(self, operation: str, message: str, func, *args) -> Dict[str, Any]:
        try:
            return func(*args)
        except ValidationError:
            logger.warning("%s rejected invalid input.", operation, exc_info=True)
            return _failure(INVALID_REQUEST)
        except (CalmWaveError, OSError):
            logger.exception("%s failed.", operation)
            return _failure(message)
        except Exception:
            logger.exception("%s failed unexpectedly.", operation)
            return _failure(message)

    def start_session(self, user_id: str, initial_state: Dict[str, Any]) -> Dict[str, Any]:
        def _start() -> Dict[str, Any]:
            initial = _mapping(initial_state, "initial_state")
            state = EmotionalState(
                initial_mood=initial.get("initial_mood"),
                stress_level=initial.get("stress_level"),
                anxiety_level=initial.get("anxiety_level"),
                dominant_emotions=tuple(initial.get("dominant_emotions") or ()),
            )
            result = self.orchestrator.initialize_session(user_id, state)
            context = result.user_context
            return {
                "success": True,
                "session_id": result.session_id,
                "recommended_theme": result.recommended_theme,
                "greeting": context.personalized_greeting,
                "is_returning_user": context.is_returning_user,
                "context_summary": result.personalized_context_summary,
            }

        if not user_id:
            return _failure(INVALID_REQUEST)
        return self._guard("start_session", START_FAILED, _start)

    def complete_session(
        self,
        session_id: str,
        user_id: str,
        transcript: str,
        final_state: Dict[str, Any],
        metrics: Optional[Dict[str, Any]] = None,
        user_consent: bool = False,
    ) -> Dict[str, Any]:
        def _complete() -> Dict[str, Any]:
            final = _mapping(final_state, "final_state")
            if transcript is not None and not isinstance(transcript, str):
                raise ValidationError("transcript must be text.")
            result = self.orchestrator.complete_session(
                session_id,
                user_id,
                transcript,
                FinalEmotionalState(
                    final_mood=final.get("final_mood"),
                    calming_effectiveness=final.get("calming_effectiveness"),
                    dominant_emotions=tuple(final.get("dominant_emotions") or ()),
                ),
                TherapeuticMetrics.from_dict(metrics),
                bool(user_consent),
            )
            return {
                "success": True,
                "session_id": result.session_id,
                "summary": result.summary.to_dict(),
                "recommendations": result.recommendations,
                "progress_updated": result.progress_updated,
            }

        return self._guard("complete_session", COMPLETE_FAILED, _complete)

    def abandon_session(self, session_id: str) -> Dict[str, Any]:
        def _abandon() -> Dict[str, Any]:
            session = self.orchestrator.abandon_session(session_id)
            return {"success": session is not None, "session_id": session_id}

        return self._guard("abandon_session", COMPLETE_FAILED, _abandon)

    def get_user_context(self, user_id: str) -> Dict[str, Any]:
        def _context() -> Dict[str, Any]:
            context = self.orchestrator.continuity.get_user_context(user_id)
            progress = context.recent_progress
            return {
                "success": True,
                "user_id": user_id,
                "is_returning_user": context.is_returning_user,
                "total_sessions": context.total_sessions,
                "days_since_last_session": context.days_since_last_session,
                "recent_progress": asdict(progress),
                "recommendations": context.recommendations,
                "greeting": context.personalized_greeting,
            }

        return self._guard("get_user_context", CONTEXT_FAILED, _context)

    def get_dashboard(self, user_id: str, limit: Optional[int] = None) -> Dict[str, Any]:
        def _dashboard() -> Dict[str, Any]:
            insights = self.orchestrator.get_session_insights(user_id, limit)
            return {"success": True, "user_id": user_id, **asdict(insights)}

        return self._guard("get_dashboard", DASHBOARD_FAILED, _dashboard)
