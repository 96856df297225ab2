"""
Refraction Screening Service - Backend logic for test sessions.
Keeps one EyeTestSession per client and serialises all calls for it.
"""

import logging
import threading
from dataclasses import asdict
from typing import Optional, Dict, Any, Mapping

from refraction_engine.config import TestConfig, load_config_from_env
from refraction_engine.core import EyeTestSession, FaceObservation
from refraction_engine.recorder import DataRecorder

logger = logging.getLogger(__name__)


class SessionService:
    """Registry of live test sessions."""

    def __init__(self, default_config: Optional[TestConfig] = None):
        self.default_config = default_config or load_config_from_env()
        self._sessions: Dict[str, EyeTestSession] = {}
        self._locks: Dict[str, threading.Lock] = {}
        self._registry_lock = threading.Lock()

    def _get(self, session_id: str):
        with self._registry_lock:
            if session_id not in self._sessions:
                raise KeyError(session_id)
            return self._sessions[session_id], self._locks[session_id]

    def create_session(
        self,
        device_info: Optional[Mapping[str, Any]] = None,
        config: Optional[Mapping[str, Any]] = None
    ) -> Dict[str, Any]:
        """Open a new session; config values are merged over the service defaults."""
        if config:
            merged = asdict(self.default_config)
            merged.update(config)
            test_config = TestConfig.from_mapping(merged)
        else:
            test_config = self.default_config

        recorder = DataRecorder(device_info=device_info)
        session = EyeTestSession(config=test_config, recorder=recorder)

        with self._registry_lock:
            self._sessions[recorder.session_id] = session
            self._locks[recorder.session_id] = threading.Lock()

        logger.info("[SessionService] Created session %s", recorder.session_id)
        return {
            'session_id': recorder.session_id,
            'config': test_config.to_dict(),
            'status': session.status(),
        }

    def close_session(self, session_id: str) -> Dict[str, Any]:
        """Drop a session and its records."""
        with self._registry_lock:
            if self._sessions.pop(session_id, None) is None:
                raise KeyError(session_id)
            self._locks.pop(session_id, None)
        logger.info("[SessionService] Closed session %s", session_id)
        return {'session_id': session_id, 'closed': True}

    def start_eye(self, session_id: str, eye: str) -> Dict[str, Any]:
        session, lock = self._get(session_id)
        with lock:
            record = session.start_eye(eye)
            return {
                'record_id': record.record_id,
                'eye': record.eye,
                'status': session.status(),
            }

    def process_frame(self, session_id: str, face: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
        """Feed one tracker event; ``face`` is None when no face was found."""
        session, lock = self._get(session_id)
        observation = FaceObservation(**face) if face is not None else None
        with lock:
            return session.process_frame(observation).to_dict()

    def calibrate(self, session_id: str, manual_distance_cm: Optional[float] = None) -> Dict[str, Any]:
        session, lock = self._get(session_id)
        with lock:
            outcome = session.calibrate(manual_distance_cm)
            result = outcome.to_dict()
            result['status'] = session.status()
            return result

    def next_optotype(self, session_id: str) -> Dict[str, Any]:
        session, lock = self._get(session_id)
        with lock:
            presentation = session.next_optotype()
            if presentation is None:
                return {'available': False, 'phase': session.phase.value}
            result = presentation.to_dict()
            result['available'] = True
            return result

    def submit_response(self, session_id: str, direction: str) -> Dict[str, Any]:
        session, lock = self._get(session_id)
        with lock:
            outcome = session.submit_response(direction)
            if outcome is None:
                raise ValueError("No optotype is waiting for a response")
            result = outcome.to_dict()
            result['phase'] = session.phase.value
            return result

    def record_far_point(self, session_id: str) -> Dict[str, Any]:
        session, lock = self._get(session_id)
        with lock:
            result = session.record_far_point().to_dict()
            result['phase'] = session.phase.value
            return result

    def finalize(self, session_id: str) -> Dict[str, Any]:
        session, lock = self._get(session_id)
        with lock:
            return session.finalize().to_dict()

    def status(self, session_id: str) -> Dict[str, Any]:
        session, lock = self._get(session_id)
        with lock:
            return session.status()

    def export_record(self, session_id: str, record_id: str) -> Dict[str, Any]:
        session, lock = self._get(session_id)
        with lock:
            record = session.recorder.get_record(record_id)
            if record is None:
                raise KeyError(record_id)
            return record.to_dict()

    def record_summary(self, session_id: str, record_id: str) -> Dict[str, Any]:
        session, lock = self._get(session_id)
        with lock:
            summary = session.recorder.summary(record_id)
            if summary is None:
                raise KeyError(record_id)
            return summary


# Singleton instance
_session_service = None

def get_session_service() -> SessionService:
    global _session_service
    if _session_service is None:
        _session_service = SessionService()
    return _session_service
