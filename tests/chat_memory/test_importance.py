"""Tests for ImportanceScorer."""

from datetime import timedelta

import pytest

from chat_memory.importance import ImportanceScorer
from chat_memory.models import ChatMessage, ScoringInput


@pytest.fixture
def scorer(clock):
    return ImportanceScorer(clock)


def _input(clock, content, is_from_user=True, hours_ago=0.0):
    return ScoringInput(
        content=content,
        is_from_user=is_from_user,
        created_at=clock.now() - timedelta(hours=hours_ago),
    )


def test_fresh_plain_user_message(scorer, clock):
    assert scorer.score(_input(clock, "ok")) == 11


def test_recency_decays_by_half_point_per_hour(scorer, clock):
    assert scorer.score(_input(clock, "ok", hours_ago=4)) == 9


def test_explicit_importance_marker_increases_score(scorer, clock):
    plain = scorer.score(_input(clock, "I went to the store today"))
    marked = scorer.score(_input(clock, "Remember: I went to the store today"))
    assert marked > plain
    assert marked - plain == 4


def test_score_is_never_negative(scorer, clock):
    result = scorer.score(
        _input(clock, "whatever", is_from_user=False, hours_ago=100)
    )
    assert result == 0


def test_length_bonuses(scorer, clock):
    long_text = "word " * 70
    assert scorer.score(_input(clock, long_text)) == 11 + 2


def test_long_assistant_answer_gets_bonus(scorer, clock):
    answer = "word " * 50
    short = scorer.score(_input(clock, "word", is_from_user=False))
    long = scorer.score(_input(clock, answer, is_from_user=False))
    # +1 for length over 100 and +1 for a substantive answer
    assert long - short == 2


def test_chinese_markers(scorer, clock):
    # request (请) + explicit importance (记住) + personal data (生日)
    assert scorer.score(_input(clock, "请记住我的生日")) == 10 + 3 + 4 + 3 + 1


def test_question_and_request(scorer, clock):
    assert scorer.score(_input(clock, "Can you help me?")) == 10 + 3 + 3 + 1


def test_matched_markers():
    markers = ImportanceScorer.matched_markers("My email is jane@example.com")
    assert "personal_data" in markers
    assert "low_importance" not in markers


def test_score_message_prefers_precomputed(scorer):
    message = ChatMessage(role="user", content="Remember this", importance=2.5)
    assert scorer.score_message(message) == 2.5


def test_score_message_scores_when_missing(scorer, clock):
    message = ChatMessage(role="user", content="ok", timestamp=clock.now())
    assert scorer.score_message(message) == 11


def test_naive_timestamp_is_treated_as_utc(scorer, clock):
    naive = ScoringInput(
        content="ok", created_at=(clock.now() - timedelta(hours=4)).replace(tzinfo=None)
    )
    assert naive.created_at.tzinfo is not None
    assert scorer.score(naive) == 9
