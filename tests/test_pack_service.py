from dataclasses import replace

import pytest

from conftest import StaticIntentModel

from wingman.errors import InvalidRequestError, PackNotReadyError
from wingman.models import PackSubmission
from wingman.pack_service import PACK_OPENED_EVENT, InMemoryPackRepository, WingmanPackService


def _submission(words):
    return PackSubmission(three_words=words, green_flags=["loyal"], hype_note="A legend")


@pytest.fixture
def repo():
    return InMemoryPackRepository()


@pytest.fixture
def intent_model():
    return StaticIntentModel()


@pytest.fixture
def service(make_pipeline, repo, analytics, intent_model):
    return WingmanPackService(make_pipeline(intent_model=intent_model), repo, analytics=analytics, match_count=2)


def _opened_events(analytics):
    return [e for e in analytics.events if e["event_type"] == PACK_OPENED_EVENT]


def test_no_round_gives_empty_pack(service):
    resp = service.get_pack("me")
    assert resp.round_number is None
    assert resp.compiled_summary is None
    assert resp.matches == []


def test_not_ready_round(service, repo):
    repo.start_round("me", target_submissions=3)
    repo.submit("me", _submission(["funny"]))
    with pytest.raises(PackNotReadyError) as err:
        service.get_pack("me")
    assert (err.value.current, err.value.target) == (1, 3)


def test_ready_round_compiles_once(service, repo, analytics, intent_model):
    repo.start_round("me", target_submissions=2)
    repo.submit("me", _submission(["funny", "kind"]))
    repo.submit("me", _submission(["kind"]))

    first = service.get_pack("me")
    assert first.round_number == 1
    assert first.compiled_summary.top_words == ["kind", "funny"]
    assert first.wingman_prompt.startswith("My friends describe me as kind, funny.")
    assert intent_model.calls == [first.wingman_prompt]
    assert len(first.matches) == 2
    assert first.opened_at is not None
    for match in first.matches:
        assert "embedding" not in match.profile

    second = service.get_pack("me")
    assert second == first
    assert len(intent_model.calls) == 1
    assert len(_opened_events(analytics)) == 1


def test_submissions_closed_when_round_is_full(repo):
    repo.start_round("me", target_submissions=1)
    repo.submit("me", _submission(["funny"]))
    with pytest.raises(InvalidRequestError):
        repo.submit("me", _submission(["kind"]))


def test_new_round_hides_previous_pack(service, repo):
    repo.start_round("me", target_submissions=1)
    repo.submit("me", _submission(["funny"]))
    assert service.get_pack("me").round_number == 1

    repo.start_round("me", target_submissions=1)
    with pytest.raises(PackNotReadyError):
        service.get_pack("me")

    repo.submit("me", _submission(["calm"]))
    resp = service.get_pack("me")
    assert resp.round_number == 2
    assert resp.compiled_summary.top_words == ["calm"]


def test_unopened_stored_pack_fires_event_once(service, repo, analytics):
    repo.start_round("me", target_submissions=1)
    repo.submit("me", _submission(["funny"]))
    service.get_pack("me")
    stored = repo.latest_pack("me")
    repo._packs[("me", 1)] = replace(stored, opened_at=None)

    reopened = service.get_pack("me")
    service.get_pack("me")
    assert reopened.opened_at is not None
    assert len(_opened_events(analytics)) == 2
