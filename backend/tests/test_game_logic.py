import sys
import os
import time

import pytest

# Add backend to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from errors import CapacityExhausted, RoomNotFound
from game_engine import GameEngine, calculate_points
from room_registry import Phase, Player, Room, RoomRegistry, generate_room_code, normalize_code
import config


@pytest.fixture
def scoring(monkeypatch):
    monkeypatch.setattr(config, "POINTS_BASE", 500)
    monkeypatch.setattr(config, "BONUS_MAX", 500)
    monkeypatch.setattr(config, "ROUND_TIME_LIMIT_MS", 30000)


def make_room(max_players=8):
    return Room("000001", max_players)


def seat(room, *names):
    players = []
    for i, name in enumerate(names):
        player = Player(len(room.players) + 1, name)
        room.players.append(player)
        if room.host_id is None:
            room.host_id = player.id
        players.append(player)
    return players


class FixedRandom:
    """Always draws the same number, forcing collisions."""
    def __init__(self, value=0):
        self.value = value

    def randrange(self, n):
        return self.value % n


# ---------------------------------------------------------------------------
# Scoring Tests
# ---------------------------------------------------------------------------

class TestScoring:
    def test_instant_correct_answer_gets_full_bonus(self, scoring):
        assert calculate_points(True, 0) == 1000

    def test_half_time_gets_half_bonus(self, scoring):
        assert calculate_points(True, 15000) == 750

    def test_bonus_is_floored(self, scoring):
        # (30000 - 29000) / 30000 * 500 = 16.67
        assert calculate_points(True, 29000) == 516

    def test_late_answer_floors_at_base(self, scoring):
        assert calculate_points(True, 45000) == 500

    def test_negative_elapsed_clamped(self, scoring):
        assert calculate_points(True, -250) == 1000

    def test_incorrect_answer_scores_nothing(self, scoring):
        assert calculate_points(False, 0) == 0
        assert calculate_points(False, 29000) == 0

    def test_correct_always_strictly_positive(self, scoring):
        for elapsed in (0, 1, 10000, 29999, 30000, 99999):
            assert calculate_points(True, elapsed) > 0

    def test_points_decrease_with_time(self, scoring):
        earlier = calculate_points(True, 5000)
        later = calculate_points(True, 20000)
        assert earlier > later


# ---------------------------------------------------------------------------
# Room Code Allocation
# ---------------------------------------------------------------------------

class TestRoomCodeAllocation:
    def test_code_is_fixed_width_numeric(self):
        code = generate_room_code(set())
        assert len(code) == config.ROOM_CODE_LENGTH
        assert code.isdigit()

    def test_code_avoids_taken(self):
        taken = {"000000"}
        code = generate_room_code(taken, rng=FixedRandom(0))
        assert code not in taken

    def test_linear_scan_after_random_collisions(self):
        taken = {str(i).zfill(2) for i in range(99)}
        code = generate_room_code(taken, length=2, rng=FixedRandom(5))
        assert code == "99"

    def test_zero_attempts_goes_straight_to_scan(self):
        code = generate_room_code({"0"}, length=1, attempts=0)
        assert code == "1"

    def test_exhausted_space_raises(self):
        taken = {str(i) for i in range(10)}
        with pytest.raises(CapacityExhausted):
            generate_room_code(taken, length=1)

    def test_registry_codes_pairwise_distinct(self, monkeypatch):
        monkeypatch.setattr(config, "ROOM_CODE_LENGTH", 2)
        monkeypatch.setattr(config, "MAX_ROOMS", 0)
        registry = RoomRegistry()
        codes = [registry.create().code for _ in range(100)]
        assert len(set(codes)) == 100
        with pytest.raises(CapacityExhausted):
            registry.create()


class TestNormalizeCode:
    def test_pads_short_codes(self):
        assert normalize_code("42") == "000042"

    def test_accepts_integers(self):
        assert normalize_code(123456) == "123456"

    def test_strips_whitespace(self):
        assert normalize_code(" 000777 ") == "000777"

    @pytest.mark.parametrize("raw", ["", "abc", "12a", "1234567", None, "-12"])
    def test_rejects_invalid(self, raw):
        with pytest.raises(RoomNotFound):
            normalize_code(raw)


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

class TestRegistry:
    def test_create_starts_in_lobby_with_ttl(self, monkeypatch):
        monkeypatch.setattr(config, "ROOM_TTL_SECONDS", 100)
        registry = RoomRegistry()
        before = time.time()
        room = registry.create(max_players=4, host_name="Quizmaster")
        assert room.state == Phase.LOBBY
        assert room.max_players == 4
        assert room.host_name == "Quizmaster"
        assert room.expires_at >= before + 100
        assert registry.get(room.code) is room

    def test_default_max_players(self):
        room = RoomRegistry().create()
        assert room.max_players == config.DEFAULT_MAX_PLAYERS

    def test_room_id_embeds_code(self):
        room = RoomRegistry().create()
        assert room.room_id.startswith(f"{room.code}-")

    def test_delete_removes_and_closes(self):
        registry = RoomRegistry()
        room = registry.create()
        assert registry.delete(room.code) is room
        assert registry.get(room.code) is None
        assert room.closed
        assert not registry.is_live(room)

    def test_delete_ignores_other_room_with_same_code(self):
        registry = RoomRegistry()
        room = registry.create()
        stale = Room(room.code, 4)
        assert registry.delete(room.code, stale) is None
        assert registry.get(room.code) is room

    def test_explicit_code_collision(self):
        registry = RoomRegistry()
        room = registry.create()
        with pytest.raises(CapacityExhausted):
            registry.create(code=room.code)

    def test_max_rooms_limit(self, monkeypatch):
        monkeypatch.setattr(config, "MAX_ROOMS", 2)
        registry = RoomRegistry()
        registry.create()
        registry.create()
        with pytest.raises(CapacityExhausted):
            registry.create()

    def test_is_expired(self):
        room = make_room()
        assert not room.is_expired()
        assert room.is_expired(room.expires_at)


# ---------------------------------------------------------------------------
# Room roster
# ---------------------------------------------------------------------------

class TestRoomRoster:
    def test_removing_host_promotes_earliest_seat(self):
        room = make_room()
        alice, bob, carol = seat(room, "Alice", "Bob", "Carol")
        room.remove_player(alice.id)
        assert room.host_id == bob.id
        hosts = [p for p in room.player_list() if p["isHost"]]
        assert len(hosts) == 1 and hosts[0]["id"] == bob.id

    def test_removing_non_host_keeps_host(self):
        room = make_room()
        alice, bob, carol = seat(room, "Alice", "Bob", "Carol")
        room.remove_player(bob.id)
        assert room.host_id == alice.id
        assert [p.id for p in room.players] == [alice.id, carol.id]

    def test_removing_last_player_clears_host(self):
        room = make_room()
        (alice,) = seat(room, "Alice")
        room.remove_player(alice.id)
        assert room.host_id is None
        assert room.players == []

    def test_remove_unknown_player(self):
        room = make_room()
        seat(room, "Alice")
        assert room.remove_player(999) is None

    def test_remove_drops_pending_answer(self):
        room = make_room()
        alice, bob = seat(room, "Alice", "Bob")
        room.answers[bob.id] = 2
        room.remove_player(bob.id)
        assert bob.id not in room.answers

    def test_unnamed_player_not_ready(self):
        player = Player(1)
        assert not player.ready
        player.set_name("Alice")
        assert player.ready
        assert player.display_name == "Alice"

    def test_all_ready_answered_ignores_unready(self):
        room = make_room()
        alice, = seat(room, "Alice")
        lurker = Player(50)
        room.players.append(lurker)
        room.answers[alice.id] = 0
        assert room.all_ready_answered()

    def test_all_ready_answered_when_only_unready_remain(self):
        room = make_room()
        room.players.append(Player(1))
        assert room.all_ready_answered()

    def test_all_ready_answered_waits_for_stragglers(self):
        room = make_room()
        alice, bob = seat(room, "Alice", "Bob")
        room.answers[alice.id] = 0
        assert not room.all_ready_answered()

    def test_reset_for_lobby_keeps_roster(self):
        room = make_room()
        alice, bob = seat(room, "Alice", "Bob")
        alice.score = 900
        room.state = Phase.FINISHED
        room.current_question_index = 3
        room.answers = {alice.id: 1}
        epoch = room.epoch
        room.reset_for_lobby()
        assert room.state == Phase.LOBBY
        assert room.current_question_index == -1
        assert room.answers == {}
        assert room.questions == []
        assert [p.id for p in room.players] == [alice.id, bob.id]
        assert alice.score == 0
        assert room.epoch > epoch


# ---------------------------------------------------------------------------
# Leaderboard
# ---------------------------------------------------------------------------

class TestLeaderboard:
    def test_sorted_by_score_descending(self):
        room = make_room()
        alice, bob, carol = seat(room, "Alice", "Bob", "Carol")
        alice.score, bob.score, carol.score = 500, 800, 300
        board = GameEngine(RoomRegistry(), None).get_leaderboard(room)
        assert [e["name"] for e in board] == ["Bob", "Alice", "Carol"]
        assert [e["rank"] for e in board] == [1, 2, 3]

    def test_ties_keep_seat_order(self):
        room = make_room()
        alice, bob, carol, dave = seat(room, "Alice", "Bob", "Carol", "Dave")
        alice.score, bob.score, carol.score, dave.score = 100, 700, 100, 700
        board = GameEngine(RoomRegistry(), None).get_leaderboard(room)
        assert [e["name"] for e in board] == ["Bob", "Dave", "Alice", "Carol"]

    def test_empty_room(self):
        assert GameEngine(RoomRegistry(), None).get_leaderboard(make_room()) == []
