"""Upload session lifecycle finite state machine.

Each :class:`~dbxlib.upload.session.UploadSession` owns one instance and
fires an event after every successful network call, so an out-of-order
call (appending before the session is open, committing twice, ...)
raises ``TransitionNotAllowed`` instead of silently corrupting the
remote cursor.

The FSM is purely a validation tool -- it has no callbacks and does not
perform any I/O.
"""

from __future__ import annotations

from statemachine import State, StateMachine


class UploadSessionSM(StateMachine):
    """Lifecycle of one file's upload.

    States:
        not_started  -- No byte has been sent.
        session_open -- A remote session exists; the cursor is live.
        finalized    -- The file was committed (session finish or
                        single-shot upload).
        closed       -- The session was closed for a later batch commit.
    """

    not_started = State("not_started", initial=True, value="not_started")
    session_open = State("session_open", value="session_open")
    finalized = State("finalized", value="finalized", final=True)
    closed = State("closed", value="closed", final=True)

    open_session = not_started.to(session_open)
    append = session_open.to.itself()
    finalize = session_open.to(finalized) | not_started.to(finalized)
    close_session = session_open.to(closed)


def create_fsm(current_state: str = "not_started") -> UploadSessionSM:
    """Create an FSM instance positioned at *current_state*."""
    return UploadSessionSM(start_value=current_state)
