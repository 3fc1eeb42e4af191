"""Score notification: composes a mailto link summarising an attempt."""

import logging
from datetime import datetime
from typing import Optional
from urllib.parse import quote

logger = logging.getLogger("dailyquiz.notifications")

BODY_TEMPLATE = """As-salamu alaykum,

Here is the quiz result for participant: {username}

SCORE: {score} / {max_score}
Level: {difficulty}
Questions asked: {total}
Date: {when}
"""


def compose_score_email(
    recipient: str,
    username: str,
    score: int,
    total_questions: int,
    difficulty: str,
    points_per_question: int = 5,
    when: Optional[datetime] = None,
) -> dict:
    """Return subject, body and a ready-to-open `mailto:` URL."""
    when = when or datetime.now()
    subject = f"Quiz score - {username}"
    body = BODY_TEMPLATE.format(
        username=username,
        score=score,
        max_score=total_questions * points_per_question,
        difficulty=difficulty,
        total=total_questions,
        when=when.strftime("%Y-%m-%d %H:%M"),
    )
    url = f"mailto:{recipient}?subject={quote(subject)}&body={quote(body)}"
    return {"recipient": recipient, "subject": subject, "body": body, "mailto": url}


class ScoreNotifier:
    """Composes the score email; delivery is left to the client."""

    def __init__(self, recipient: str):
        self.recipient = recipient

    def notify(self, username, score, total_questions, difficulty, points_per_question=5, when=None) -> dict:
        message = compose_score_email(
            self.recipient, username, score, total_questions, difficulty, points_per_question, when
        )
        logger.info("score notification composed for %s: %s", username, message["subject"])
        return message
