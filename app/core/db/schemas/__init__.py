# Import models so Alembic and Base metadata are aware of them
from .auth import User  # noqa: F401
from .quiz import (  # noqa: F401
    Answer,
    Option,
    Participant,
    Question,
    Quiz,
    QuizSession,
    Submission,
)
