"""Grotto trial state machines entered after a grotto is cleansed."""

from __future__ import annotations

import logging
import random
import secrets
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, Mapping

from ..characters import Character, get_region
from ..config import EngineConfig
from ..content import ItemRegistry
from ..errors import ExternalCollaboratorFailure, InvariantViolation
from ..ledger import Payment, ResourceLedger
from ..party import Expedition, utcnow
from ..raids import RaidService
from ..repository import CharacterRepository
from . import tables
from .maze import MazeGenerator, cell_beyond_wall, step, turn
from .store import (
    TRIAL_TYPES,
    Grotto,
    GrottoStore,
    MazeState,
    PuzzleState,
    TargetPracticeState,
)

__all__ = ["GrottoTrialEngine", "MAZE_ACTIONS", "TrialResult"]

log = logging.getLogger(__name__)

MAZE_ACTIONS = ("left", "right", "straight", "back", "wall")
_SCRYING_PASS_CHANCE = {"mazep": 0.6, "mazen": 0.4}


@dataclass
class TrialResult:
    """What happened during one trial step."""

    outcome: str
    message: str
    costs: Dict[str, int] = field(default_factory=dict)
    loot: Dict[str, int] = field(default_factory=dict)
    completed: bool = False
    sealed: bool = False
    raid_id: str | None = None
    consumes_turn: bool = True

    def add_costs(self, stamina: int = 0, hearts: int = 0) -> None:
        if stamina:
            self.costs["stamina"] = self.costs.get("stamina", 0) + stamina
        if hearts:
            self.costs["hearts"] = self.costs.get("hearts", 0) + hearts


class GrottoTrialEngine:
    """Run grotto trials for expeditions."""

    def __init__(
        self,
        config: EngineConfig,
        store: GrottoStore,
        ledger: ResourceLedger,
        raids: RaidService,
        maze_generator: MazeGenerator,
        characters: CharacterRepository,
        items: ItemRegistry,
        *,
        rng: random.Random | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.config = config
        self.store = store
        self.ledger = ledger
        self.raids = raids
        self.maze_generator = maze_generator
        self.characters = characters
        self.items = items
        self._rng = rng or random.Random()
        self._clock = clock

    # -- entry ---------------------------------------------------------------
    async def active_grotto(self, party: Expedition) -> Grotto:
        grotto = await self.store.get(party.square, party.quadrant, party.expedition_id)
        if grotto is None or not grotto.is_open:
            raise InvariantViolation("There is no active grotto here.")
        return grotto

    async def ensure_cleansable(self, party: Expedition) -> int:
        """Validate a cleanse and return the index of the member holding the cleansing item."""

        existing = await self.store.get(party.square, party.quadrant, party.expedition_id)
        if existing is not None:
            if existing.is_open:
                raise InvariantViolation("This grotto already has a pending trial.")
            raise InvariantViolation("This grotto has already been cleansed on this expedition.")
        for other in await self.store.list_for_expedition(party.expedition_id, party.square):
            if other.is_open:
                raise InvariantViolation("Another grotto trial in this square is still pending.")
        for index, slot in enumerate(party.characters):
            if slot.has_item(self.config.cleanse_item):
                return index
        raise InvariantViolation(
            f"Cleansing a grotto requires a {self.config.cleanse_item} in someone's loadout."
        )

    async def cleanse(self, party: Expedition, actor_index: int) -> tuple[Grotto, TrialResult]:
        holder = await self.ensure_cleansable(party)
        payment = await self.ledger.pay(party, actor_index, self.config.costs.cleanse)
        party.characters[holder].take_item(self.config.cleanse_item)
        trial_type = self._draw_trial_type()
        grotto = Grotto(
            grotto_id=f"G{secrets.token_hex(4).upper()}",
            square=party.square,
            quadrant=party.quadrant,
            expedition_id=party.expedition_id,
            trial_type=trial_type,
            created_at=self._clock(),
        )
        result = await self._begin(party, actor_index, grotto)
        result.add_costs(payment.stamina, payment.hearts)
        try:
            await self.store.save(grotto)
        except OSError as exc:
            await self._abandon(party, grotto, payment)
            raise ExternalCollaboratorFailure(f"Could not record the cleansed grotto: {exc}") from exc
        log.info(
            "Expedition %s cleansed grotto %s at %s %s (%s)",
            party.expedition_id,
            grotto.grotto_id,
            party.square,
            party.quadrant,
            trial_type,
        )
        return grotto, result

    async def _abandon(self, party: Expedition, grotto: Grotto, payment: Payment) -> None:
        """Undo a cleanse whose grotto record could not be written."""

        if grotto.raid_id is not None:
            try:
                await self.raids.finish(grotto.raid_id, "closed")
            except OSError as exc:
                log.warning("Could not close raid %s for abandoned grotto: %s", grotto.raid_id, exc)
            if party.active_raid_id == grotto.raid_id:
                party.active_raid_id = None
        try:
            await self.store.delete(grotto.square, grotto.quadrant, grotto.expedition_id)
        except OSError as exc:
            log.warning("Could not discard grotto %s: %s", grotto.grotto_id, exc)
        await self.ledger.refund(party, payment)

    def _draw_trial_type(self) -> str:
        weights = self.config.trial_weights
        population = [name for name in TRIAL_TYPES if weights.get(name, 0) > 0]
        if not population:
            raise InvariantViolation("No grotto trials are configured.")
        return self._rng.choices(population, weights=[weights[name] for name in population], k=1)[0]

    async def _begin(self, party: Expedition, actor_index: int, grotto: Grotto) -> TrialResult:
        if grotto.trial_type == "blessing":
            loot = self._reward_party(party)
            grotto.complete(self._clock())
            return TrialResult(
                "grotto_blessing",
                "The grotto's blessing washes over the party.",
                loot=loot,
                completed=True,
            )
        if grotto.trial_type == "target_practice":
            grotto.target_practice = TargetPracticeState()
            return TrialResult(
                "grotto_target_practice",
                f"Targets rise from the grotto floor. Land {self.config.target_practice.required_successes} hits without a miss-fire.",
            )
        if grotto.trial_type == "puzzle":
            puzzle = tables.roll_puzzle(self._rng)
            grotto.puzzle = PuzzleState(puzzle_id=puzzle.puzzle_id)
            return TrialResult("grotto_puzzle", puzzle.prompt)
        if grotto.trial_type == "maze":
            entry = self._rng.choice(("diagonal", "horizontal", "vertical"))
            size = self.config.maze_size
            layout = self.maze_generator.generate(size, size, entry)
            grotto.maze = MazeState(layout=layout, x=layout.start[0], y=layout.start[1])
            return TrialResult("grotto_maze", "A maze of shifting stone opens before the party.")
        if grotto.trial_type == "test_of_power":
            result = TrialResult("grotto_test_of_power", "A guardian awakens to test the party.")
            await self._start_battle(party, actor_index, grotto, "Grotto Guardian", 8, result)
            return result
        raise InvariantViolation(f"Unknown grotto trial '{grotto.trial_type}'.")

    # -- shared helpers ------------------------------------------------------
    def _reward_party(self, party: Expedition) -> Dict[str, int]:
        for slot in party.characters:
            slot.found_items.append(self.config.reward_item)
        return {self.config.reward_item: party.member_count}

    async def _start_battle(
        self,
        party: Expedition,
        actor_index: int,
        grotto: Grotto,
        monster: str,
        tier: int,
        result: TrialResult,
    ) -> bool:
        village = get_region(party.region).village
        started = await self.raids.start(
            monster,
            tier,
            party.characters[actor_index].name,
            village,
            party.expedition_id,
            grotto.grotto_id,
        )
        if not started.success or started.raid_id is None:
            log.warning(
                "Raid against %s for grotto %s did not start: %s",
                monster,
                grotto.grotto_id,
                started.error,
            )
            result.message = f"{result.message} {monster} stirs but does not engage."
            return False
        grotto.raid_id = started.raid_id
        party.active_raid_id = started.raid_id
        result.raid_id = started.raid_id
        result.message = f"{result.message} {monster} (tier {tier}) attacks! Raid {started.raid_id} has begun."
        return True

    async def _apply_penalty(
        self, party: Expedition, actor_index: int, outcome: tables.MazeOutcome, result: TrialResult
    ) -> None:
        if outcome.stamina_cost:
            budget = party.total_stamina + party.total_hearts
            payment = await self.ledger.pay(party, actor_index, min(outcome.stamina_cost, budget))
            result.add_costs(payment.stamina, payment.hearts)
        if outcome.hearts_lost:
            damage = await self.ledger.damage(party, actor_index, outcome.hearts_lost)
            result.add_costs(hearts=damage.hearts)

    # -- target practice -----------------------------------------------------
    def _practice_bonus(self, party: Expedition, actor_index: int) -> int:
        settings = self.config.target_practice
        slot = party.characters[actor_index]
        if slot.job.strip().lower() in settings.bonus_jobs:
            return settings.bonus
        if any(settings.bonus_item_keyword in item.lower() for item in slot.items):
            return settings.bonus
        return 0

    async def target_practice(self, party: Expedition, actor_index: int) -> tuple[Grotto, TrialResult]:
        grotto = await self.active_grotto(party)
        if grotto.trial_type != "target_practice" or grotto.target_practice is None:
            raise InvariantViolation("This grotto is not a target practice trial.")
        settings = self.config.target_practice
        state = grotto.target_practice
        bonus = self._practice_bonus(party, actor_index)
        roll = self._rng.randint(1, 100)
        state.attempts += 1
        actor = party.characters[actor_index].name
        if roll <= settings.fail_threshold - bonus:
            grotto.complete(self._clock(), sealed=True)
            result = TrialResult(
                "grotto_target_failed",
                f"{actor} misfires (rolled {roll}). The targets sink away and the grotto seals.",
                sealed=True,
            )
        elif roll <= settings.miss_threshold - bonus:
            result = TrialResult("grotto_target_miss", f"{actor} misses (rolled {roll}).")
        else:
            state.successes += 1
            result = TrialResult(
                "grotto_target_hit",
                f"{actor} hits (rolled {roll}). {state.successes}/{settings.required_successes} targets down.",
            )
            if state.successes >= settings.required_successes:
                result.loot = self._reward_party(party)
                result.completed = True
                result.message += " The trial is complete!"
                grotto.complete(self._clock())
        await self.store.save(grotto)
        return grotto, result

    # -- puzzle --------------------------------------------------------------
    async def _party_inventories(self, party: Expedition) -> list[Character]:
        records: list[Character] = []
        for slot in party.characters:
            character = await self.characters.get(slot.character_id)
            if character is not None:
                records.append(character)
        return records

    async def submit_puzzle(
        self, party: Expedition, actor_index: int, items: str, description: str = ""
    ) -> tuple[Grotto, TrialResult]:
        grotto = await self.active_grotto(party)
        if grotto.trial_type != "puzzle" or grotto.puzzle is None:
            raise InvariantViolation("This grotto is not a puzzle trial.")
        if grotto.puzzle.status != "open":
            raise InvariantViolation("An offering is already waiting for review.")
        try:
            offering = tables.parse_offering(items)
        except ValueError as exc:
            raise InvariantViolation(str(exc)) from exc
        inventories = await self._party_inventories(party)
        for name, quantity in offering.items():
            held = sum(character.item_quantity(name) for character in inventories)
            if held < quantity:
                raise InvariantViolation(
                    f"The party only holds {held} x {name} but offered {quantity}."
                )
        puzzle = tables.PUZZLES[grotto.puzzle.puzzle_id]
        grotto.puzzle.offering = offering
        grotto.puzzle.description = description
        grotto.puzzle.submitted_by = party.characters[actor_index].name
        grotto.puzzle.status = "awaiting_review"
        grotto.puzzle.suggested = tables.offering_satisfies(puzzle, offering)
        await self.store.save(grotto)
        listing = ", ".join(f"{name} x{quantity}" for name, quantity in offering.items())
        return grotto, TrialResult(
            "grotto_puzzle_offering",
            f"{grotto.puzzle.submitted_by} places an offering ({listing}). It awaits review.",
        )

    async def review_puzzle(
        self, party: Expedition, grotto: Grotto, approved: bool
    ) -> TrialResult:
        if grotto.puzzle is None or grotto.puzzle.status != "awaiting_review":
            raise InvariantViolation("There is no puzzle offering waiting for review.")
        puzzle = tables.PUZZLES[grotto.puzzle.puzzle_id]
        consumed = tables.consumption_for(puzzle, grotto.puzzle.offering)
        if not consumed:
            consumed = dict(grotto.puzzle.offering)
        await self._consume_from_party(party, consumed)
        if approved:
            grotto.puzzle.status = "approved"
            grotto.complete(self._clock())
            result = TrialResult(
                "grotto_puzzle_solved",
                "The offering is accepted and the grotto opens its treasures.",
                loot=self._reward_party(party),
                completed=True,
            )
        else:
            grotto.puzzle.status = "denied"
            grotto.complete(self._clock(), sealed=True)
            result = TrialResult(
                "grotto_puzzle_denied",
                "The offering crumbles to dust. The grotto seals itself.",
                sealed=True,
            )
        await self.store.save(grotto)
        return result

    async def _consume_from_party(self, party: Expedition, consumed: Mapping[str, int]) -> None:
        remaining = dict(consumed)
        for slot in party.characters:
            if not any(remaining.values()):
                break

            def take(character: Character) -> None:
                for name, quantity in list(remaining.items()):
                    available = min(quantity, character.item_quantity(name))
                    if available and character.remove_item(name, available):
                        remaining[name] = quantity - available

            try:
                await self.characters.update(slot.character_id, take)
            except (OSError, KeyError) as exc:
                raise ExternalCollaboratorFailure(
                    f"Could not remove the offering from {slot.name}'s inventory: {exc}"
                ) from exc

    # -- maze ----------------------------------------------------------------
    async def maze(self, party: Expedition, actor_index: int, action: str) -> tuple[Grotto, TrialResult]:
        grotto = await self.active_grotto(party)
        if grotto.trial_type != "maze" or grotto.maze is None:
            raise InvariantViolation("This grotto is not a maze trial.")
        if action not in MAZE_ACTIONS:
            raise InvariantViolation(f"Unknown maze action '{action}'.")
        if grotto.raid_id is not None:
            raise InvariantViolation("A construct still blocks the maze. Finish the raid first.")
        state = grotto.maze
        actor = party.characters[actor_index].name
        if action == "wall":
            result = await self._maze_wall(party, actor_index, grotto, actor)
        else:
            facing = turn(state.facing, action)
            nx, ny = step(state.x, state.y, facing)
            if not state.layout.is_walkable(nx, ny):
                raise InvariantViolation("A wall blocks that way.")
            state.facing = facing
            state.move_to(nx, ny)
            result = TrialResult("grotto_maze_step", f"{actor} leads the party {action}.")
            await self._maze_cell(party, actor_index, grotto, result)
        await self.store.save(grotto)
        return grotto, result

    async def _maze_wall(
        self, party: Expedition, actor_index: int, grotto: Grotto, actor: str
    ) -> TrialResult:
        roll = self._rng.randint(1, 6)
        outcome = tables.wall_outcome(roll, self._rng)
        result = TrialResult(
            f"grotto_maze_{outcome.type}",
            f"{actor} sings to the wall (rolled {roll}).",
        )
        await self._maze_effect(party, actor_index, grotto, outcome, result)
        return result

    async def _maze_effect(
        self,
        party: Expedition,
        actor_index: int,
        grotto: Grotto,
        outcome: tables.MazeOutcome,
        result: TrialResult,
    ) -> None:
        state = grotto.maze
        assert state is not None
        if outcome.type == "faster_path_open":
            target = cell_beyond_wall(state.layout, state.x, state.y, state.facing)
            if target is None:
                result.message += " A passage grinds open, but leads nowhere new."
                return
            state.move_to(*target)
            result.message += " The wall slides away and the party slips through."
            await self._maze_cell(party, actor_index, grotto, result)
        elif outcome.type == "collapse":
            undone = state.rewind(self.config.collapse_steps)
            result.message += f" The passage collapses, forcing the party back {undone} step(s)."
        elif outcome.type == "step_back":
            state.rewind(1)
            result.message += " The party steps back to regroup."
        elif outcome.type == "battle":
            assert outcome.monster is not None
            await self._start_battle(party, actor_index, grotto, outcome.monster, outcome.tier, result)
        else:
            await self._apply_penalty(party, actor_index, outcome, result)
            if outcome.type == "pit_trap":
                result.message += " The floor gives way into a pit."
            elif outcome.type == "stalagmites":
                result.message += " Stalagmites crash down around the party."
            elif result.costs:
                result.message += " The party takes a beating."
            else:
                result.message += " Nothing happens."

    async def _maze_cell(
        self, party: Expedition, actor_index: int, grotto: Grotto, result: TrialResult
    ) -> None:
        state = grotto.maze
        assert state is not None
        cell = state.layout.cell_at(state.x, state.y)
        if cell is None:
            return
        if cell.type == "exit":
            result.loot = self._reward_party(party)
            result.completed = True
            result.outcome = "grotto_maze_exit"
            result.message += " The party reaches the maze's exit!"
            grotto.complete(self._clock())
            return
        if cell.key in state.visited_cells or cell.type in ("path", "start"):
            return
        state.visited_cells.append(cell.key)
        if cell.type == "trap":
            roll = self._rng.randint(1, 6)
            outcome = tables.trap_outcome(roll, self._rng)
            result.outcome = "grotto_maze_trap"
            await self._apply_penalty(party, actor_index, outcome, result)
            result.message += " A trap springs!" if result.costs else " A trap clicks but nothing happens."
        elif cell.type == "chest":
            loot: Dict[str, int] = {}
            for slot in party.characters:
                item = self.items.random_item(party.region, self._rng)
                slot.found_items.append(item.name)
                loot[item.name] = loot.get(item.name, 0) + 1
            result.loot = loot
            result.outcome = "grotto_maze_chest"
            result.message += " The party finds a chest and shares its contents."
        elif cell.type in _SCRYING_PASS_CHANCE:
            chance = _SCRYING_PASS_CHANCE[cell.type]
            if any(slot.job.strip().lower() == "entertainer" for slot in party.characters):
                chance *= self.config.entertainer_multiplier
            result.outcome = "grotto_maze_scrying"
            if self._rng.random() < min(chance, 1.0):
                result.message += " The Song of Scrying rings true."
                await self._maze_effect(party, actor_index, grotto, tables.FASTER_PATH, result)
            else:
                result.message += " The Song of Scrying falters."
                await self._maze_effect(
                    party, actor_index, grotto, tables.scrying_failure(self._rng), result
                )

    # -- test of power / raids ----------------------------------------------
    async def raid_finished(self, party: Expedition, raid_id: str, victory: bool) -> TrialResult | None:
        """Resolve a grotto bound to ``raid_id`` after its raid ends."""

        for grotto in await self.store.list_for_expedition(party.expedition_id):
            if grotto.raid_id != raid_id:
                continue
            grotto.raid_id = None
            if grotto.trial_type == "test_of_power":
                if victory:
                    grotto.complete(self._clock())
                    result = TrialResult(
                        "grotto_test_of_power_won",
                        "The guardian falls. The grotto rewards the party.",
                        loot=self._reward_party(party),
                        completed=True,
                    )
                else:
                    grotto.complete(self._clock(), sealed=True)
                    result = TrialResult(
                        "grotto_test_of_power_lost",
                        "The guardian stands unbroken and the grotto seals.",
                        sealed=True,
                    )
            elif victory:
                result = TrialResult("grotto_maze_battle_won", "The construct crumbles. The maze is open again.")
            else:
                grotto.complete(self._clock(), sealed=True)
                result = TrialResult(
                    "grotto_maze_battle_lost",
                    "The construct drives the party out and the maze seals.",
                    sealed=True,
                )
            await self.store.save(grotto)
            return result
        return None

    # -- continue ------------------------------------------------------------
    async def continue_trial(self, party: Expedition, actor_index: int) -> tuple[Grotto, TrialResult]:
        """Take the next step of whichever trial is active at the party's location."""

        grotto = await self.active_grotto(party)
        if grotto.trial_type == "target_practice":
            return await self.target_practice(party, actor_index)
        if grotto.trial_type == "test_of_power":
            if grotto.raid_id is not None:
                raise InvariantViolation("The guardian raid is still in progress.")
            result = TrialResult("grotto_test_of_power", "The party challenges the guardian again.")
            await self._start_battle(party, actor_index, grotto, "Grotto Guardian", 8, result)
            await self.store.save(grotto)
            return grotto, result
        if grotto.trial_type == "puzzle" and grotto.puzzle is not None:
            puzzle = tables.PUZZLES[grotto.puzzle.puzzle_id]
            if grotto.puzzle.status == "awaiting_review":
                message = "The offering still awaits review."
            else:
                message = f"The puzzle waits for an offering: {puzzle.prompt}"
            return grotto, TrialResult("grotto_puzzle", message, consumes_turn=False)
        if grotto.trial_type == "maze" and grotto.maze is not None:
            state = grotto.maze
            openings = [
                action
                for action in ("left", "right", "straight", "back")
                if state.layout.is_walkable(*step(state.x, state.y, turn(state.facing, action)))
            ]
            message = (
                f"The party stands in the maze facing {state.facing.upper()}. "
                f"Open ways: {', '.join(openings) or 'none'}."
            )
            return grotto, TrialResult("grotto_maze", message, consumes_turn=False)
        raise InvariantViolation("There is nothing to continue in this grotto.")
