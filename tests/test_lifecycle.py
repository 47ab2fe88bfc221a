import pytest

from baitbreaker.requester.lifecycle import InvalidTransition, LinkStatus, LinkTracker


def test_flagged_link_goes_through_summary():
    tracker = LinkTracker()
    tracker.begin_classify("a")
    assert tracker.status("a") == LinkStatus.CLASSIFYING
    assert [i.identity for i in tracker.in_flight()] == ["a"]

    tracker.finish_classify("a", flagged=True, detail="curiosity gap")
    assert tracker.status("a") == LinkStatus.CLASSIFIED_FLAGGED
    assert tracker.get("a").detail == "curiosity gap"
    assert tracker.can_summarize("a") is True

    tracker.begin_summary("a")
    tracker.finish_summary("a")
    assert tracker.status("a") == LinkStatus.SUMMARIZED
    assert tracker.in_flight() == []


def test_clean_link_cannot_be_summarized():
    tracker = LinkTracker()
    tracker.begin_classify("a")
    tracker.finish_classify("a", flagged=False)

    assert tracker.can_summarize("a") is False
    with pytest.raises(InvalidTransition):
        tracker.begin_summary("a")


def test_backward_and_skipping_transitions_are_rejected():
    tracker = LinkTracker()
    tracker.track("a")

    with pytest.raises(InvalidTransition):
        tracker.finish_classify("a", flagged=True)
    with pytest.raises(InvalidTransition):
        tracker.begin_summary("a")

    tracker.begin_classify("a")
    tracker.finish_classify("a", flagged=True)
    with pytest.raises(InvalidTransition):
        tracker.begin_classify("a")


def test_revert_puts_item_back_where_it_was():
    tracker = LinkTracker()
    tracker.begin_classify("a")
    tracker.revert("a", "Request timed out. Hover to retry.")

    item = tracker.get("a")
    assert item.status == LinkStatus.UNCLASSIFIED
    assert item.detail == "Request timed out. Hover to retry."
    assert tracker.can_classify("a") is True

    tracker.begin_classify("a")
    tracker.finish_classify("a", flagged=True)
    tracker.begin_summary("a")
    tracker.revert("a")
    assert tracker.status("a") == LinkStatus.CLASSIFIED_FLAGGED

    with pytest.raises(InvalidTransition):
        tracker.revert("a")


def test_errored_item_retries_only_the_failed_stage():
    tracker = LinkTracker()
    tracker.begin_classify("a")
    tracker.fail("a", "backend refused")

    assert tracker.status("a") == LinkStatus.ERRORED
    assert tracker.can_classify("a") is True
    assert tracker.can_summarize("a") is False
    with pytest.raises(InvalidTransition):
        tracker.begin_summary("a")

    tracker.begin_classify("a")
    tracker.finish_classify("a", flagged=True)
    tracker.begin_summary("a")
    tracker.fail("a", "fetch failed")

    assert tracker.can_classify("a") is False
    assert tracker.can_summarize("a") is True
    tracker.begin_summary("a")
    tracker.finish_summary("a")
    assert tracker.status("a") == LinkStatus.SUMMARIZED


def test_disable_all_is_terminal_until_reset():
    tracker = LinkTracker()
    tracker.begin_classify("a")
    tracker.track("b")
    tracker.begin_classify("c")
    tracker.finish_classify("c", flagged=False)

    assert tracker.disable_all("reload the page") == 3
    assert tracker.disabled is True
    assert tracker.count(LinkStatus.DISABLED) == 3
    assert tracker.track("d").status == LinkStatus.DISABLED

    with pytest.raises(InvalidTransition):
        tracker.begin_classify("b")
    assert tracker.can_classify("b") is False

    tracker.reset(["a", "b"])
    assert tracker.disabled is False
    assert tracker.status("a") == LinkStatus.UNCLASSIFIED
    assert tracker.get("c") is None


def test_listeners_see_every_move():
    tracker = LinkTracker()
    seen = []

    def broken(item, old, new):
        raise RuntimeError("renderer crashed")

    tracker.subscribe(broken)
    unsubscribe = tracker.subscribe(lambda item, old, new: seen.append((item.identity, old, new)))

    tracker.begin_classify("a")
    tracker.finish_classify("a", flagged=False)
    unsubscribe()
    tracker.disable_all()

    assert seen == [
        ("a", LinkStatus.UNCLASSIFIED, LinkStatus.CLASSIFYING),
        ("a", LinkStatus.CLASSIFYING, LinkStatus.CLASSIFIED_CLEAN),
    ]
