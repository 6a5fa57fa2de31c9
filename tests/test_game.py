from dataclasses import replace

import pytest

from duet import game
from duet.game import PuzzleState


def make_puzzle(**overrides):
    base = PuzzleState(
        id="p1",
        date="2026-02-14",
        setter_id="alice",
        solver_id="bob",
        target_word="BRAVE",
        secret_message="Dinner at eight?",
    )
    return replace(base, **overrides)


def lost_puzzle(**overrides):
    return make_puzzle(guesses=["CRANE", "SLATE", "GRAPE", "TRADE", "CRAVE", "GRAVE"], **overrides)


def test_brave_end_to_end():
    puzzle = make_puzzle()

    first = game.submit_guess(puzzle, "CRANE")
    assert first.accepted
    assert first.changes == {"guesses": ["CRANE"], "is_solved": False}
    assert first.status == "playing"
    assert game.score_guess("CRANE", puzzle.target_word) == ["absent", "exact", "exact", "absent", "exact"]

    second = game.submit_guess(first.state, "BRAVE")
    assert second.accepted
    assert second.status == "won"
    assert second.state.is_solved
    assert second.state.guesses == ["CRANE", "BRAVE"]


def test_guess_is_normalized_to_upper_case():
    t = game.submit_guess(make_puzzle(), "crane")
    assert t.state.guesses == ["CRANE"]


@pytest.mark.parametrize("letters", ["CRAN", "CRANES", "CR4NE", "", "CRÂNE"])
def test_malformed_guess_is_a_no_op(letters):
    puzzle = make_puzzle()
    t = game.submit_guess(puzzle, letters)
    assert not t.accepted
    assert t.changes == {}
    assert t.state is puzzle


def test_sixth_miss_loses():
    puzzle = make_puzzle(guesses=["CRANE", "SLATE", "GRAPE", "TRADE", "CRAVE"])
    t = game.submit_guess(puzzle, "GRAVE")
    assert t.accepted
    assert t.status == "lost"
    assert not t.state.is_solved


def test_sixth_guess_match_wins():
    puzzle = make_puzzle(guesses=["CRANE", "SLATE", "GRAPE", "TRADE", "CRAVE"])
    t = game.submit_guess(puzzle, "BRAVE")
    assert t.status == "won"
    assert t.state.is_solved
    assert len(t.state.guesses) == 6


@pytest.mark.parametrize("puzzle", [lost_puzzle(), make_puzzle(guesses=["BRAVE"], is_solved=True)])
def test_guess_on_finished_puzzle_is_a_no_op(puzzle):
    t = game.submit_guess(puzzle, "CRANE")
    assert not t.accepted
    assert t.state.guesses == puzzle.guesses


def test_request_unlock_only_after_loss():
    assert not game.request_unlock(make_puzzle()).accepted
    assert not game.request_unlock(make_puzzle(guesses=["BRAVE"], is_solved=True)).accepted

    t = game.request_unlock(lost_puzzle())
    assert t.accepted
    assert t.changes == {"message_requested": True}
    assert game.unlock_status(t.state) == "requested"


def test_unlock_operations_are_idempotent():
    once = game.request_unlock(lost_puzzle()).state
    twice = game.request_unlock(once)
    assert not twice.accepted
    assert twice.state == once

    granted = game.grant_unlock(once).state
    regranted = game.grant_unlock(granted)
    assert not regranted.accepted
    assert regranted.state == granted


def test_grant_unlock_without_request():
    t = game.grant_unlock(lost_puzzle())
    assert t.accepted
    assert game.unlock_status(t.state) == "revealed"


def test_mark_viewed_requires_reveal():
    assert not game.mark_viewed(lost_puzzle()).accepted
    revealed = lost_puzzle(message_revealed=True)
    t = game.mark_viewed(revealed)
    assert t.accepted
    assert not game.mark_viewed(t.state).accepted


def test_unlock_status_never_regresses():
    puzzle = lost_puzzle()
    seen = [game.unlock_status(puzzle)]
    for op in (game.request_unlock, game.grant_unlock, game.mark_viewed, game.request_unlock, game.grant_unlock):
        puzzle = op(puzzle).state
        seen.append(game.unlock_status(puzzle))
    order = ["locked", "requested", "revealed", "viewed"]
    ranks = [order.index(s) for s in seen]
    assert ranks == sorted(ranks)
    assert seen[-1] == "viewed"


def test_visible_message():
    playing = make_puzzle()
    assert game.visible_message(playing, "setter") == "Dinner at eight?"
    assert game.visible_message(playing, "solver") is None
    assert game.visible_message(playing, None) is None
    assert game.visible_message(lost_puzzle(), "solver") is None
    assert game.visible_message(lost_puzzle(message_revealed=True), "solver") == "Dinner at eight?"
    assert game.visible_message(make_puzzle(guesses=["BRAVE"], is_solved=True), "solver") == "Dinner at eight?"


def test_public_state_hides_target_from_solver_while_playing():
    puzzle = game.submit_guess(make_puzzle(), "CRANE").state
    solver_view = game.puzzle_public_state(puzzle, "bob")
    setter_view = game.puzzle_public_state(puzzle, "alice")

    assert solver_view["role"] == "solver"
    assert solver_view["target_word"] is None
    assert solver_view["secret_message"] is None
    assert solver_view["guesses"] == [{"guess": "CRANE", "marks": ["absent", "exact", "exact", "absent", "exact"]}]
    assert solver_view["keyboard"]["C"] == "absent"

    assert setter_view["role"] == "setter"
    assert setter_view["target_word"] == "BRAVE"
    assert setter_view["secret_message"] == "Dinner at eight?"

    assert game.puzzle_public_state(lost_puzzle(), "bob")["target_word"] == "BRAVE"
