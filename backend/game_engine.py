from typing import List, Optional
import asyncio
import logging
import math
import time

import config
from connections import broadcast
from errors import (
    AlreadyAnswered, Malformed, NoQuestions, NoReadyPlayers, NotHost, NotInRoom,
    NotReady, WrongPhase,
)
from question_source import Question
from room_registry import Phase, Room, RoomRegistry

logger = logging.getLogger(__name__)


def calculate_points(correct: bool, elapsed_ms: float) -> int:
    """Base points for a correct answer plus a bonus that decays linearly over the round."""
    if not correct:
        return 0
    max_ms = config.ROUND_TIME_LIMIT_MS
    elapsed_ms = min(max(elapsed_ms, 0), max_ms)
    bonus = max(0, math.floor((max_ms - elapsed_ms) / max_ms * config.BONUS_MAX))
    return config.POINTS_BASE + bonus


class GameEngine:
    """Drives rooms through Lobby -> Question -> Results -> Question | Finished.

    Public methods expect the caller to hold ``room.lock``. Phase timers run
    as tasks that take the lock themselves, and every one of them re-checks
    that the room is still registered, in the phase it was scheduled for and
    at the same epoch before it touches anything.
    """

    def __init__(self, registry: RoomRegistry, question_source):
        self.registry = registry
        self.question_source = question_source

    # ------------------------------------------------------------------
    # Host actions
    # ------------------------------------------------------------------

    def check_can_start(self, room: Room, player_id: int):
        if room.state != Phase.LOBBY:
            raise WrongPhase()
        if room.host_id != player_id:
            raise NotHost()
        if not room.ready_players():
            raise NoReadyPlayers()

    async def fetch_questions(self, category: Optional[str]) -> List[Question]:
        """Draw a batch from the question source. Does not touch any room, so no lock is needed."""
        questions = await self.question_source.fetch(config.QUESTIONS_PER_GAME, category)
        if not questions:
            raise NoQuestions()
        return list(questions)

    async def start_game(self, room: Room, player_id: int, questions: List[Question]):
        # Re-checked here: the room may have moved on while the batch was fetched
        self.check_can_start(room, player_id)

        for player in room.players:
            player.score = 0
        room.questions = list(questions)
        room.current_question_index = 0
        room.answers = {}
        room.question_started_at = time.time()
        room.state = Phase.QUESTION
        room.epoch += 1
        logger.info("Room %s started a game with %d questions", room.code, len(room.questions))

        await broadcast(room, self._question_message(room, "gameStarted"))
        self._start_question_timer(room)

    async def pick_category(self, room: Room, player_id: int, category: Optional[str]):
        if room.state != Phase.LOBBY:
            raise WrongPhase()
        if room.host_id != player_id:
            raise NotHost()
        room.category = category or None
        await broadcast(room, {"type": "categoryPicked", "category": room.category, "by": player_id})

    async def return_to_lobby(self, room: Room, player_id: int):
        if room.host_id != player_id:
            raise NotHost()
        if room.state != Phase.FINISHED:
            raise WrongPhase()
        room.cancel_timer()
        room.reset_for_lobby()
        logger.info("Room %s returned to lobby", room.code)
        await broadcast(room, {
            "type": "returnedToLobby",
            "players": room.player_list(),
            "hostId": room.host_id,
        })

    # ------------------------------------------------------------------
    # Answers
    # ------------------------------------------------------------------

    async def submit_answer(self, room: Room, player_id: int, choice_index: int) -> dict:
        if room.state != Phase.QUESTION:
            raise WrongPhase()
        player = room.get_player(player_id)
        if player is None:
            raise NotInRoom()
        if not player.ready:
            raise NotReady()
        if player_id in room.answers:
            raise AlreadyAnswered()
        question = room.current_question
        if question is None or not (0 <= choice_index < len(question.options)):
            raise Malformed("invalid_choice")

        elapsed_ms = (time.time() - room.question_started_at) * 1000
        correct = choice_index == question.correct_index
        points = calculate_points(correct, elapsed_ms)

        room.answers[player_id] = choice_index
        player.score += points

        result = {
            "type": "answerSubmitted",
            "correct": correct,
            "points": points,
            "totalScore": player.score,
        }
        connection = room.connections.get(player_id)
        if connection:
            await connection.send(result)

        self.check_round_complete(room)
        return result

    def check_round_complete(self, room: Room) -> bool:
        """End the question early once every ready player has answered, or none are left."""
        if room.state == Phase.QUESTION and room.all_ready_answered():
            return self._try_end_question(room, room.epoch)
        return False

    # ------------------------------------------------------------------
    # Phase transitions
    # ------------------------------------------------------------------

    def _is_current(self, room: Room, phase: Phase, epoch: int) -> bool:
        return self.registry.is_live(room) and room.state == phase and room.epoch == epoch

    def _schedule(self, room: Room, coro):
        room.cancel_timer()
        room.timer_task = asyncio.create_task(coro)

    def _try_end_question(self, room: Room, epoch: int) -> bool:
        """Question -> Results, if the room is still on the question ``epoch`` refers to.

        Both the round timer and the all-answered check go through here, so
        only the first of them gets to move the room on.
        """
        if not self._is_current(room, Phase.QUESTION, epoch):
            return False
        room.state = Phase.RESULTS
        room.epoch += 1
        logger.info("Room %s question %d closed (%d/%d answered)", room.code,
                    room.current_question_index + 1, len(room.answers), len(room.ready_players()))
        self._schedule(room, self._results_flow(room, room.epoch))
        return True

    def _start_question_timer(self, room: Room):
        if config.ROUND_TIMER_ENABLED:
            self._schedule(room, self._question_timer(room, room.epoch))
        else:
            room.cancel_timer()

    async def _question_timer(self, room: Room, epoch: int):
        """Counts the round down and closes the question when time runs out."""
        try:
            deadline = room.question_started_at + config.ROUND_TIME_LIMIT_MS / 1000
            while self._is_current(room, Phase.QUESTION, epoch):
                left = deadline - time.time()
                if left <= 0:
                    break
                await broadcast(room, {"type": "timer", "remaining": math.ceil(left)})
                await asyncio.sleep(min(1.0, left))

            async with room.lock:
                self._try_end_question(room, epoch)
        except asyncio.CancelledError:
            pass

    async def _results_flow(self, room: Room, epoch: int):
        try:
            await asyncio.sleep(config.RESULTS_DELAY_SECONDS)
            async with room.lock:
                if not self._is_current(room, Phase.RESULTS, epoch):
                    return
                await broadcast(room, self._results_message(room))

            await asyncio.sleep(config.NEXT_QUESTION_DELAY_SECONDS)
            async with room.lock:
                await self._advance_after_results(room, epoch)
        except asyncio.CancelledError:
            pass

    async def _advance_after_results(self, room: Room, epoch: int):
        if not self._is_current(room, Phase.RESULTS, epoch):
            return

        next_index = room.current_question_index + 1
        if next_index >= len(room.questions):
            room.state = Phase.FINISHED
            room.epoch += 1
            room.timer_task = None
            logger.info("Room %s finished its game", room.code)
            await broadcast(room, {"type": "gameEnded", "leaderboard": self.get_leaderboard(room)})
            return

        room.current_question_index = next_index
        room.answers = {}
        room.question_started_at = time.time()
        room.state = Phase.QUESTION
        room.epoch += 1
        await broadcast(room, self._question_message(room, "nextQuestion"))
        self._start_question_timer(room)
        self.check_round_complete(room)

    # ------------------------------------------------------------------
    # Views
    # ------------------------------------------------------------------

    def _question_message(self, room: Room, msg_type: str) -> dict:
        return {
            "type": msg_type,
            "question": room.current_question.public_view(),
            "questionNumber": room.current_question_index + 1,
            "total": len(room.questions),
            "timeLimit": config.ROUND_TIME_LIMIT_MS if config.ROUND_TIMER_ENABLED else None,
        }

    def question_sync(self, room: Room) -> Optional[dict]:
        """Current question for a player arriving mid-round, if one is open."""
        if room.state != Phase.QUESTION or room.current_question is None:
            return None
        message = self._question_message(room, "nextQuestion")
        elapsed_ms = (time.time() - room.question_started_at) * 1000
        message["elapsedMs"] = int(elapsed_ms)
        return message

    def _results_message(self, room: Room) -> dict:
        question = room.current_question
        results = []
        for player in room.players:
            choice = room.answers.get(player.id)
            results.append({
                "playerId": player.id,
                "name": player.display_name,
                "answered": choice is not None,
                "choiceIndex": choice,
                "correct": choice is not None and choice == question.correct_index,
                "score": player.score,
            })
        return {
            "type": "showResults",
            "questionNumber": room.current_question_index + 1,
            "total": len(room.questions),
            "correctIndex": question.correct_index,
            "results": results,
        }

    def get_leaderboard(self, room: Room) -> List[dict]:
        # sorted() is stable, so equal scores keep seat order
        ranked = sorted(room.players, key=lambda p: -p.score)
        return [
            {"rank": i + 1, "playerId": p.id, "name": p.display_name, "score": p.score}
            for i, p in enumerate(ranked)
        ]
