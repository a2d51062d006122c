import pytest

from tambola import db
from tambola.errors import (
    AlreadyExists,
    FailedPrecondition,
    InvalidArgument,
    NotFound,
    PermissionDenied,
    ResourceExhausted,
)
from tambola.models import (
    CLAIM_ADMIN_REJECTED,
    CLAIM_APPROVED,
    CLAIM_AUTO_REJECTED,
    CLAIM_PENDING,
    PrizeClaim,
    Room,
    Winner,
)
from tambola.services import claims, rooms

from conftest import call_numbers, give_ticket, make_user

TOP_ROW = [2, 13, 35, 56, 78]
CORNERS = [2, 78, 7, 79]


def _room(code):
    return Room.query.filter_by(room_code=code).first()


def _set_pool(code, amount):
    room = _room(code)
    room.total_money_collected = amount
    db.session.commit()


def test_payout_formula():
    class Rule:
        def __init__(self, coins=0, percentage=None):
            self.coins_per_prize = coins
            self.percentage_of_pool = percentage

    assert claims.compute_payout(1000, Rule(percentage=10)) == 100
    assert claims.compute_payout(999, Rule(percentage=10)) == 99
    assert claims.compute_payout(0, Rule(coins=20, percentage=10)) == 20
    assert claims.compute_payout(1000, Rule(coins=50)) == 50
    assert claims.compute_payout(1000, Rule(coins=12.9)) == 12


def test_valid_topline_claim_is_queued_and_approved(running_room, users):
    ticket_id = give_ticket(running_room, users['alice'])
    call_numbers(running_room, users['admin'], TOP_ROW)
    _set_pool(running_room, 1000)

    claim = claims.submit_claim(users['alice'], running_room, ticket_id, 'topline', list(reversed(TOP_ROW)))
    assert claim.status == CLAIM_PENDING
    assert claim.server_validation_result is True
    assert claim.effectively_claimed_numbers == sorted(TOP_ROW)
    assert claim.coins_awarded is None

    approved = claims.approve_claim(users['admin'], running_room, claim.id)
    assert approved.status == CLAIM_APPROVED
    assert approved.coins_awarded == 100

    room = _room(running_room)
    assert [w.coins_awarded for w in room.winners] == [100]
    assert room.rule('topline').claims[0]['claimId'] == claim.id


def test_flat_coin_payout(running_room, users):
    ticket_id = give_ticket(running_room, users['alice'])
    call_numbers(running_room, users['admin'], TOP_ROW)
    _set_pool(running_room, 1000)
    claim = claims.submit_claim(users['alice'], running_room, ticket_id, 'early5', TOP_ROW)
    assert claims.approve_claim(users['admin'], running_room, claim.id).coins_awarded == 50


def test_invalid_pattern_is_auto_rejected(running_room, users):
    ticket_id = give_ticket(running_room, users['alice'])
    call_numbers(running_room, users['admin'], TOP_ROW[:4])
    claim = claims.submit_claim(users['alice'], running_room, ticket_id, 'topline', TOP_ROW[:4])
    assert claim.status == CLAIM_AUTO_REJECTED
    assert claim.server_validation_result is False
    assert claim.reason

    # An auto-rejected claim does not block a later, valid one
    call_numbers(running_room, users['admin'], TOP_ROW[4:])
    retry = claims.submit_claim(users['alice'], running_room, ticket_id, 'topline', TOP_ROW)
    assert retry.status == CLAIM_PENDING
    assert [c.id for c in claims.list_claims(users['admin'], running_room)] == [retry.id]


def test_unresolvable_pattern_is_auto_rejected(running_room, users):
    # Rules are checked when configured, so corrupt one in place
    _room(running_room).rule('topline').pattern = 'lucky'
    db.session.commit()
    ticket_id = give_ticket(running_room, users['alice'])
    claim = claims.submit_claim(users['alice'], running_room, ticket_id, 'topline', [])
    assert claim.status == CLAIM_AUTO_REJECTED
    assert 'lucky' in claim.reason


def test_duplicate_claim_fails(running_room, users):
    ticket_id = give_ticket(running_room, users['alice'])
    call_numbers(running_room, users['admin'], TOP_ROW)
    claims.submit_claim(users['alice'], running_room, ticket_id, 'topline', TOP_ROW)
    with pytest.raises(AlreadyExists):
        claims.submit_claim(users['alice'], running_room, ticket_id, 'topline', TOP_ROW)
    assert PrizeClaim.query.filter_by(status=CLAIM_PENDING).count() == 1


def test_unknown_rule_id_is_not_found(running_room, users):
    ticket_id = give_ticket(running_room, users['alice'])
    with pytest.raises(NotFound):
        claims.submit_claim(users['alice'], running_room, ticket_id, 'rule_jackpot', [])
    assert PrizeClaim.query.count() == 0


def test_submit_checks(running_room, users):
    ticket_id = give_ticket(running_room, users['alice'])
    with pytest.raises(InvalidArgument):
        claims.submit_claim(users['alice'], running_room, ticket_id, 'topline', 'all of them')
    with pytest.raises(InvalidArgument):
        claims.submit_claim(users['alice'], running_room, ticket_id, 'topline', [2, '13'])
    with pytest.raises(NotFound):
        claims.submit_claim(users['alice'], running_room, 'TICKET_MISSING', 'topline', [])
    with pytest.raises(PermissionDenied):
        claims.submit_claim(users['bob'], running_room, ticket_id, 'topline', [])

    other = rooms.create_room(users['admin'], 'Host', rules=[{'id': 'topline', 'name': 'Top Line'}])
    with pytest.raises(InvalidArgument):
        claims.submit_claim(users['alice'], other.room_code, ticket_id, 'topline', [])

    rooms.set_lifecycle(users['admin'], running_room, 'stop')
    with pytest.raises(FailedPrecondition):
        claims.submit_claim(users['alice'], running_room, ticket_id, 'topline', [])


def test_inactive_rule_cannot_be_claimed(flask_app, users):
    room = rooms.create_room(users['admin'], 'Host', rules=[
        {'id': 'topline', 'name': 'Top Line'},
        {'id': 'fullhouse', 'name': 'Full House', 'is_active': False},
    ])
    code = room.room_code
    rooms.join_room(users['alice'], code, 'Alice')
    rooms.set_lifecycle(users['admin'], code, 'start')
    ticket_id = give_ticket(code, users['alice'])
    with pytest.raises(FailedPrecondition):
        claims.submit_claim(users['alice'], code, ticket_id, 'fullhouse', [])


def test_second_approval_past_cap_is_rejected(running_room, users):
    room = _room(running_room)
    room.rule('topline').max_prizes = 1
    db.session.commit()

    alice_ticket = give_ticket(running_room, users['alice'])
    bob_ticket = give_ticket(running_room, users['bob'])
    call_numbers(running_room, users['admin'], TOP_ROW)
    first = claims.submit_claim(users['alice'], running_room, alice_ticket, 'topline', TOP_ROW)
    second = claims.submit_claim(users['bob'], running_room, bob_ticket, 'topline', TOP_ROW)

    claims.approve_claim(users['admin'], running_room, first.id)
    with pytest.raises(FailedPrecondition):
        claims.approve_claim(users['admin'], running_room, second.id)

    second = db.session.get(PrizeClaim, second.id)
    assert second.status == CLAIM_ADMIN_REJECTED
    assert second.reason
    rule = _room(running_room).rule('topline')
    assert len(rule.claims) == 1
    assert Winner.query.count() == 1

    # Rule is now full: new submissions are refused outright
    carol = make_user('carol')
    rooms.join_room(carol, running_room, 'Carol')
    carol_ticket = give_ticket(running_room, carol)
    with pytest.raises(ResourceExhausted):
        claims.submit_claim(carol, running_room, carol_ticket, 'topline', TOP_ROW)


def test_same_ticket_cannot_win_a_rule_twice(running_room, users):
    ticket_id = give_ticket(running_room, users['alice'])
    call_numbers(running_room, users['admin'], CORNERS)
    first = claims.submit_claim(users['alice'], running_room, ticket_id, 'corners', CORNERS)
    claims.approve_claim(users['admin'], running_room, first.id)
    with pytest.raises(AlreadyExists):
        claims.submit_claim(users['alice'], running_room, ticket_id, 'corners', CORNERS)


def test_winner_can_claim_again_after_restart(running_room, users):
    ticket_id = give_ticket(running_room, users['alice'])
    call_numbers(running_room, users['admin'], TOP_ROW)
    first = claims.submit_claim(users['alice'], running_room, ticket_id, 'topline', TOP_ROW)
    claims.approve_claim(users['admin'], running_room, first.id)

    rooms.set_lifecycle(users['admin'], running_room, 'stop')
    rooms.set_lifecycle(users['admin'], running_room, 'start')
    call_numbers(running_room, users['admin'], TOP_ROW)

    again = claims.submit_claim(users['alice'], running_room, ticket_id, 'topline', TOP_ROW)
    assert again.status == CLAIM_PENDING
    assert again.game_number == first.game_number + 1
    assert claims.approve_claim(users['admin'], running_room, again.id).status == CLAIM_APPROVED
    assert db.session.get(PrizeClaim, first.id).status == CLAIM_APPROVED


def test_pending_claim_is_closed_when_the_game_restarts(running_room, users):
    ticket_id = give_ticket(running_room, users['alice'])
    call_numbers(running_room, users['admin'], TOP_ROW)
    stale = claims.submit_claim(users['alice'], running_room, ticket_id, 'topline', TOP_ROW)

    rooms.set_lifecycle(users['admin'], running_room, 'stop')
    rooms.set_lifecycle(users['admin'], running_room, 'start')

    stale = db.session.get(PrizeClaim, stale.id)
    assert stale.status == CLAIM_ADMIN_REJECTED
    assert stale.reason == 'Game restarted.'
    assert stale.reviewed_by == users['admin']
    assert claims.list_claims(users['admin'], running_room) == []

    call_numbers(running_room, users['admin'], TOP_ROW)
    with pytest.raises(FailedPrecondition):
        claims.approve_claim(users['admin'], running_room, stale.id)
    assert Winner.query.count() == 0
    assert _room(running_room).rule('topline').claims == []


def test_approval_rejects_claim_from_an_earlier_game(running_room, users):
    ticket_id = give_ticket(running_room, users['alice'])
    call_numbers(running_room, users['admin'], TOP_ROW)
    claim = claims.submit_claim(users['alice'], running_room, ticket_id, 'topline', TOP_ROW)
    claim.game_number = _room(running_room).game_number - 1
    db.session.commit()

    with pytest.raises(FailedPrecondition):
        claims.approve_claim(users['admin'], running_room, claim.id)
    claim = db.session.get(PrizeClaim, claim.id)
    assert claim.status == CLAIM_ADMIN_REJECTED
    assert 'earlier game' in claim.reason
    assert Winner.query.count() == 0


def test_approval_rejects_numbers_not_called_in_this_game(running_room, users):
    ticket_id = give_ticket(running_room, users['alice'])
    call_numbers(running_room, users['admin'], TOP_ROW)
    claim = claims.submit_claim(users['alice'], running_room, ticket_id, 'topline', TOP_ROW)
    room = _room(running_room)
    room.called_numbers = TOP_ROW[:4]
    db.session.commit()

    with pytest.raises(FailedPrecondition):
        claims.approve_claim(users['admin'], running_room, claim.id)
    claim = db.session.get(PrizeClaim, claim.id)
    assert claim.status == CLAIM_ADMIN_REJECTED
    assert '78' in claim.reason
    assert Winner.query.count() == 0



def test_approval_requires_pending_claim_and_live_game(running_room, users):
    ticket_id = give_ticket(running_room, users['alice'])
    call_numbers(running_room, users['admin'], TOP_ROW)
    claim = claims.submit_claim(users['alice'], running_room, ticket_id, 'topline', TOP_ROW)

    with pytest.raises(PermissionDenied):
        claims.approve_claim(users['alice'], running_room, claim.id)
    with pytest.raises(NotFound):
        claims.approve_claim(users['admin'], running_room, 'CLAIM_MISSING')

    rooms.set_lifecycle(users['admin'], running_room, 'pause')
    claims.approve_claim(users['admin'], running_room, claim.id)
    with pytest.raises(FailedPrecondition):
        claims.approve_claim(users['admin'], running_room, claim.id)


def test_reject_claim(running_room, users):
    ticket_id = give_ticket(running_room, users['alice'])
    call_numbers(running_room, users['admin'], TOP_ROW)
    claim = claims.submit_claim(users['alice'], running_room, ticket_id, 'topline', TOP_ROW)

    with pytest.raises(InvalidArgument):
        claims.reject_claim(users['admin'], running_room, claim.id, '  ')
    rejected = claims.reject_claim(users['admin'], running_room, claim.id, 'Called too late')
    assert rejected.status == CLAIM_ADMIN_REJECTED
    assert rejected.reason == 'Called too late'
    with pytest.raises(FailedPrecondition):
        claims.reject_claim(users['admin'], running_room, claim.id, 'again')


def test_players_see_their_own_claims(running_room, users):
    ticket_id = give_ticket(running_room, users['alice'])
    call_numbers(running_room, users['admin'], TOP_ROW)
    mine = claims.submit_claim(users['alice'], running_room, ticket_id, 'topline', TOP_ROW)
    assert [c.id for c in claims.list_claims(users['alice'], running_room)] == [mine.id]
    assert claims.list_claims(users['bob'], running_room) == []
