"""Server-side quiz timer and scoring.

A QuizSession is what the browser used to track on its own: the shuffled
question order, a countdown per question, the running score and the answers
given so far. It lives in the signed session cookie between requests, so it
only ever holds question ids and time limits, never the correct answers.

Time only moves forward when the session is touched. Every call takes a
``now`` timestamp (defaults to ``time.time()``) and first catches up on any
questions whose countdown ran out since the last request.
"""

import math
import random
import time

DEFAULT_TIME_LIMIT = 30
DEFAULT_MIN_SCORE = 70


class QuizError(Exception):
    """Base class for quiz state errors."""


class QuizCompleted(QuizError):
    """The quiz has no question left to answer."""


class QuestionOutOfOrder(QuizError):
    """An answer arrived for a question other than the one being shown."""

    def __init__(self, expected, got):
        super().__init__(f'Expected an answer for question {expected}, got {got}')
        self.expected = expected
        self.got = got


class QuizSession:
    def __init__(self, attempt_id, order, time_limits, min_score=DEFAULT_MIN_SCORE,
                 current=0, score=0, answers=None, timed_out=None,
                 question_started_at=None, is_complete=False):
        if len(order) != len(time_limits):
            raise ValueError('order and time_limits must have the same length')
        self.attempt_id = attempt_id
        self.order = list(order)
        self.time_limits = list(time_limits)
        self.min_score = min_score
        self.current = current
        self.score = score
        # keyed by str(question_id) so the dict survives a JSON round trip
        self.answers = dict(answers or {})
        self.timed_out = list(timed_out or [])
        self.question_started_at = time.time() if question_started_at is None else question_started_at
        self.is_complete = is_complete or not self.order

    @classmethod
    def start(cls, attempt_id, questions, min_score=DEFAULT_MIN_SCORE, now=None, rng=None):
        """Shuffle ``questions`` (dicts with ``id`` and optional ``time_limit``) into a new session."""
        rng = rng or random.Random()
        shuffled = list(questions)
        rng.shuffle(shuffled)
        order = [q['id'] for q in shuffled]
        time_limits = [_time_limit(q.get('time_limit')) for q in shuffled]
        return cls(attempt_id, order, time_limits, min_score=min_score,
                   question_started_at=time.time() if now is None else now)

    @property
    def total(self):
        return len(self.order)

    @property
    def current_question_id(self):
        if self.is_complete:
            return None
        return self.order[self.current]

    @property
    def percentage_score(self):
        if not self.order:
            return 0.0
        return self.score / len(self.order) * 100

    @property
    def passed(self):
        return self.percentage_score >= self.min_score

    def deadline(self):
        """Timestamp at which the current question times out."""
        if self.is_complete:
            return None
        return self.question_started_at + self.time_limits[self.current]

    def time_remaining(self, now=None):
        if self.is_complete:
            return 0
        now = time.time() if now is None else now
        return max(0, math.ceil(self.deadline() - now))

    def advance(self, now=None):
        """Time out every question whose countdown has run out by ``now``."""
        now = time.time() if now is None else now
        while not self.is_complete:
            deadline = self.deadline()
            if now < deadline:
                break
            self.timed_out.append(self.order[self.current])
            # the next question was shown the moment the previous one expired
            self._next(deadline)
        return self

    def answer(self, question_id, answer, answer_key, now=None):
        """Grade ``answer`` for the question on screen and move on.

        ``answer_key`` maps question id to its correct answer. Returns whether
        the answer was correct.
        """
        now = time.time() if now is None else now
        self.advance(now)
        if self.is_complete:
            raise QuizCompleted('Quiz is already complete')

        expected = self.order[self.current]
        if str(question_id) != str(expected):
            raise QuestionOutOfOrder(expected, question_id)

        correct = answer is not None and answer == answer_key.get(expected)
        self.answers[str(expected)] = answer
        if correct:
            self.score += 1
        self._next(now)
        return correct

    def finish(self, now=None):
        """Close the quiz, timing out whatever was left unanswered."""
        now = time.time() if now is None else now
        self.advance(now)
        while not self.is_complete:
            self.timed_out.append(self.order[self.current])
            self._next(now)
        return self

    def _next(self, started_at):
        self.current += 1
        self.question_started_at = started_at
        if self.current >= len(self.order):
            self.current = len(self.order)
            self.is_complete = True

    def to_dict(self):
        return {
            'attempt_id': self.attempt_id,
            'order': self.order,
            'time_limits': self.time_limits,
            'min_score': self.min_score,
            'current': self.current,
            'score': self.score,
            'answers': self.answers,
            'timed_out': self.timed_out,
            'question_started_at': self.question_started_at,
            'is_complete': self.is_complete,
        }

    @classmethod
    def from_dict(cls, data):
        return cls(
            attempt_id=data['attempt_id'],
            order=data['order'],
            time_limits=data['time_limits'],
            min_score=data.get('min_score', DEFAULT_MIN_SCORE),
            current=data.get('current', 0),
            score=data.get('score', 0),
            answers=data.get('answers'),
            timed_out=data.get('timed_out'),
            question_started_at=data.get('question_started_at'),
            is_complete=data.get('is_complete', False),
        )


def _time_limit(value):
    try:
        seconds = int(value)
    except (TypeError, ValueError):
        return DEFAULT_TIME_LIMIT
    return seconds if seconds > 0 else DEFAULT_TIME_LIMIT
