"""Command surface of the expedition engine.

Every command resolves the expedition and the acting character, holds the
expedition's session lock for the whole action, and persists the party once
the action has been applied. Library errors derive from
:class:`~expedition.errors.ExpeditionError` and are left for the caller to
present.
"""

from __future__ import annotations

import asyncio
import logging
import random
import secrets
from dataclasses import dataclass, field
from datetime import datetime
from functools import partial
from pathlib import Path
from typing import Awaitable, Callable, Dict, List, Sequence

from .characters import Character, get_region
from .combat import CombatResolver, DiceCombatResolver
from .config import EngineConfig
from .content import ContentLibrary
from .errors import (
    CharacterNotOwned,
    ExpeditionNotFound,
    ExternalCollaboratorFailure,
    InsufficientResources,
    InvalidLocation,
    InvariantViolation,
    NotYourTurn,
)
from .grotto import BacktrackerMazeGenerator, GrottoStore, GrottoTrialEngine, TrialResult
from .ledger import Payment, ResourceLedger, plan_payment
from .lifecycle import ExpeditionLifecycle
from .outcomes import OutcomeKind, OutcomeRoller, RollContext
from .party import (
    CharacterSlot,
    Expedition,
    ExpeditionStore,
    PendingChoice,
    ProgressLogEntry,
    utcnow,
)
from .raids import LocalRaidService, RaidService
from .repository import CharacterRepository
from .rewards import format_loot, share_summary
from .sessions import SessionLocks
from .turns import TurnScheduler
from .world import QUADRANTS, MapStore, MapSynchronizer, is_adjacent, parse_location
from .world.grid import Location

__all__ = ["ActionResult", "ExplorationEngine"]

log = logging.getLogger(__name__)

RESOLVED_STATES = frozenset({"explored", "secured", "inaccessible"})


@dataclass
class ActionResult:
    """The state of an expedition after a command, with the entries it produced."""

    expedition: Expedition
    entries: List[ProgressLogEntry] = field(default_factory=list)
    message: str = ""
    pending: PendingChoice | None = None

    @property
    def next_actor(self) -> CharacterSlot | None:
        if not self.expedition.is_active:
            return None
        return self.expedition.current_slot()


@dataclass
class _Step:
    message: str
    entries: List[ProgressLogEntry] = field(default_factory=list)
    advance: bool = True


Action = Callable[[Expedition, int], Awaitable[_Step]]


class ExplorationEngine:
    """Orchestrate rolls, movement, trials and raids for every expedition."""

    def __init__(
        self,
        *,
        config: EngineConfig,
        expeditions: ExpeditionStore,
        characters: CharacterRepository,
        sync: MapSynchronizer,
        trials: GrottoTrialEngine,
        raids: RaidService,
        content: ContentLibrary,
        roller: OutcomeRoller,
        ledger: ResourceLedger,
        lifecycle: ExpeditionLifecycle,
        combat: CombatResolver,
        turns: TurnScheduler | None = None,
        locks: SessionLocks | None = None,
        rng: random.Random | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.config = config
        self.expeditions = expeditions
        self.characters = characters
        self.sync = sync
        self.trials = trials
        self.raids = raids
        self.content = content
        self.roller = roller
        self.ledger = ledger
        self.lifecycle = lifecycle
        self.combat = combat
        self.turns = turns or TurnScheduler()
        self.locks = locks or SessionLocks()
        self._rng = rng or random.Random()
        self._clock = clock
        # One join at a time across every expedition.
        self._recruiting = asyncio.Lock()
        self._outcome_handlers: Dict[
            OutcomeKind, Callable[[Expedition, int, Payment], Awaitable[_Step]]
        ] = {
            OutcomeKind.MONSTER: self._on_monster,
            OutcomeKind.ITEM: self._on_item,
            OutcomeKind.EXPLORED: self._on_explored,
            OutcomeKind.FAIRY: self._on_fairy,
            OutcomeKind.CHEST: self._on_chest,
            OutcomeKind.OLD_MAP: self._on_old_map,
            OutcomeKind.CAMP: self._on_safe_haven,
            OutcomeKind.RUINS: partial(self._on_discovery, OutcomeKind.RUINS),
            OutcomeKind.RELIC: partial(self._on_discovery, OutcomeKind.RELIC),
            OutcomeKind.MONSTER_CAMP: partial(self._on_discovery, OutcomeKind.MONSTER_CAMP),
            OutcomeKind.GROTTO: partial(self._on_discovery, OutcomeKind.GROTTO),
        }
        missing = set(OutcomeKind) - set(self._outcome_handlers)
        if missing:
            raise RuntimeError(f"No handler for outcomes: {sorted(kind.value for kind in missing)}")

    @classmethod
    def build(
        cls,
        data_dir: Path,
        *,
        config: EngineConfig | None = None,
        content: ContentLibrary | None = None,
        rng: random.Random | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> "ExplorationEngine":
        """Wire the default JSON-backed collaborators under ``data_dir``."""

        config = config or EngineConfig()
        content = content or ContentLibrary.load_from_path()
        rng = rng or random.Random()
        characters = CharacterRepository(data_dir / "characters.json")
        ledger = ResourceLedger(characters, config.costs)
        sync = MapSynchronizer(
            MapStore(data_dir / "map.json"), max_counted=config.max_discoveries_per_square
        )
        raids = LocalRaidService(data_dir / "raids.json", cooldown=config.raid_cooldown, clock=clock)
        trials = GrottoTrialEngine(
            config,
            GrottoStore(data_dir / "grottos.json"),
            ledger,
            raids,
            BacktrackerMazeGenerator(rng),
            characters,
            content.items,
            rng=rng,
            clock=clock,
        )
        return cls(
            config=config,
            expeditions=ExpeditionStore(data_dir / "expeditions.json"),
            characters=characters,
            sync=sync,
            trials=trials,
            raids=raids,
            content=content,
            roller=OutcomeRoller.from_config(config, rng=rng),
            ledger=ledger,
            lifecycle=ExpeditionLifecycle(config, characters, sync, raids, clock=clock),
            combat=DiceCombatResolver(rng),
            rng=rng,
            clock=clock,
        )

    # -- recruiting ----------------------------------------------------------
    async def setup(self, user_id: int, region: str) -> ActionResult:
        """Open a new expedition into ``region`` led by ``user_id``."""

        try:
            info = get_region(region)
        except KeyError as exc:
            raise InvalidLocation(f"'{region}' is not a region expeditions can explore.") from exc
        expedition_id = await self._new_expedition_id()
        party = Expedition(
            expedition_id=expedition_id,
            region=info.key,
            leader_user_id=user_id,
            square=info.start_square,
            quadrant=info.start_quadrant,
            created_at=self._clock(),
        )
        await self.expeditions.save(party)
        log.info("Expedition %s opened in %s by user %s", expedition_id, info.key, user_id)
        return ActionResult(
            party,
            message=(
                f"Expedition {expedition_id} into {info.key.title()} is recruiting. "
                f"Members gather in {info.village.title()}."
            ),
        )

    async def _new_expedition_id(self) -> str:
        while True:
            candidate = f"E{self._rng.randrange(1_000_000):06d}"
            if not await self.expeditions.exists(candidate):
                return candidate

    async def join(
        self, expedition_id: str, user_id: int, character_name: str, items: Sequence[str]
    ) -> ActionResult:
        """Add one of ``user_id``'s characters to an open expedition with a loadout."""

        async with self.locks.hold(expedition_id), self._recruiting:
            party = await self.expeditions.get(expedition_id)
            if party is None:
                raise ExpeditionNotFound(expedition_id)
            if party.status != "open":
                raise InvariantViolation("This expedition is no longer recruiting.")
            character = await self.characters.find_by_name(user_id, character_name)
            if character is None:
                raise CharacterNotOwned(character_name)
            self._check_recruit(party, character)
            elsewhere = await self.expeditions.find_for_character(character.character_id)
            if elsewhere is not None:
                raise InvariantViolation(
                    f"{character.name} is already on expedition {elsewhere.expedition_id}."
                )
            loadout = self._check_loadout(character, items)

            def pack(record: Character) -> None:
                for item in loadout:
                    if not record.remove_item(item):
                        raise ValueError(f"{record.name} no longer carries {item}")

            try:
                await self.characters.update(character.character_id, pack)
            except (OSError, KeyError, ValueError) as exc:
                raise ExternalCollaboratorFailure(
                    f"Could not pack {character.name}'s loadout: {exc}"
                ) from exc
            party.characters.append(
                CharacterSlot(
                    character_id=character.character_id,
                    user_id=character.user_id,
                    name=character.name,
                    job=character.job,
                    current_hearts=character.current_hearts,
                    current_stamina=character.current_stamina,
                    max_hearts=character.max_hearts,
                    max_stamina=character.max_stamina,
                    items=list(loadout),
                )
            )
            party.recompute_totals()
            entry = self._log(party, character.name, "joined", f"{character.name} joins the expedition.")
            await self.expeditions.save(party)
        return ActionResult(party, [entry], entry.message)

    def _check_recruit(self, party: Expedition, character: Character) -> None:
        if party.member_count >= self.config.max_party_size:
            raise InvariantViolation("The expedition party is already full.")
        if any(slot.character_id == character.character_id for slot in party.characters):
            raise InvariantViolation(f"{character.name} is already in this expedition.")
        if any(slot.user_id == character.user_id for slot in party.characters):
            raise InvariantViolation("You already have a character in this expedition.")
        if not character.can_embark(self._clock()):
            raise InvariantViolation(f"{character.name} is still recovering and cannot join.")
        village = get_region(party.region).village
        if character.current_village.casefold() != village.casefold():
            raise InvalidLocation(
                f"{character.name} must be in {village.title()} to join this expedition."
            )

    def _check_loadout(self, character: Character, items: Sequence[str]) -> list[str]:
        loadout = [item.strip() for item in items if item and item.strip()]
        if len(loadout) != self.config.loadout_size:
            raise InvariantViolation(
                f"Bring exactly {self.config.loadout_size} items on an expedition."
            )
        needed: Dict[str, int] = {}
        for item in loadout:
            needed[item.casefold()] = needed.get(item.casefold(), 0) + 1
        for item in loadout:
            if character.item_quantity(item) < needed[item.casefold()]:
                raise InvariantViolation(f"{character.name} does not carry enough {item}.")
        return loadout

    async def start(self, expedition_id: str, user_id: int) -> ActionResult:
        async with self.locks.hold(expedition_id):
            party = await self.expeditions.get(expedition_id)
            if party is None:
                raise ExpeditionNotFound(expedition_id)
            if party.status != "open":
                raise InvariantViolation("This expedition has already started.")
            if party.leader_user_id != user_id:
                raise InvariantViolation("Only the expedition leader can start it.")
            if not party.characters:
                raise InvariantViolation("Nobody has joined this expedition yet.")
            info = get_region(party.region)
            party.status = "started"
            party.square = info.start_square
            party.quadrant = info.start_quadrant
            party.current_turn = 0
            party.recompute_totals()
            await self.sync.reconcile(party)
            first = party.characters[0].name
            entry = self._log(
                party,
                first,
                "expedition_started",
                f"The party sets out from {info.village.title()} at {party.square} {party.quadrant}.",
            )
            await self.expeditions.save(party)
        log.info("Expedition %s started with %s member(s)", party.expedition_id, party.member_count)
        return ActionResult(party, [entry], entry.message)

    # -- shared plumbing -----------------------------------------------------
    async def _resolve(
        self, expedition_id: str, user_id: int, character_name: str
    ) -> tuple[Expedition, int]:
        party = await self.expeditions.get(expedition_id)
        if party is None or not party.is_active:
            raise ExpeditionNotFound(expedition_id)
        index = party.slot_index(character_name)
        if index is None or party.characters[index].user_id != user_id:
            raise CharacterNotOwned(character_name)
        return party, index

    def _guard(self, party: Expedition, *, during_raid: bool = False) -> None:
        if party.pending is not None:
            owner = party.characters[party.pending.character_index].name
            raise InvariantViolation(f"Waiting for {owner} to decide on the {party.pending.kind}.")
        if party.active_raid_id and not during_raid:
            raise InvariantViolation(
                f"Raid {party.active_raid_id} is in progress. The party can only retreat."
            )

    def _log(
        self,
        party: Expedition,
        character_name: str,
        outcome: str,
        message: str,
        *,
        loot: Dict[str, int] | None = None,
        costs: Dict[str, int] | None = None,
        discovery_key: str | None = None,
    ) -> ProgressLogEntry:
        entry = ProgressLogEntry(
            at=self._clock(),
            character_name=character_name,
            outcome=outcome,
            message=message,
            square=party.square,
            quadrant=party.quadrant,
            loot=loot or None,
            costs=costs or None,
            discovery_key=discovery_key,
            discovery_status="pending" if discovery_key else None,
        )
        return party.append_log(entry)

    def _trial_entry(self, party: Expedition, index: int, result: TrialResult) -> ProgressLogEntry:
        return self._log(
            party,
            party.characters[index].name,
            result.outcome,
            result.message,
            loot=result.loot,
            costs=result.costs,
        )

    async def _act(
        self,
        expedition_id: str,
        user_id: int,
        character_name: str,
        action: Action,
        *,
        during_raid: bool = False,
    ) -> ActionResult:
        async with self.locks.hold(expedition_id):
            party, index = await self._resolve(expedition_id, user_id, character_name)
            settled = await self._settle_expired(party)
            self._guard(party, during_raid=during_raid)
            self.turns.validate_turn(party, index)
            step = await action(party, index)
            if step.advance:
                self.turns.advance(party)
            entries = settled + step.entries
            message = step.message
            failure = await self._check_defeat(party)
            if failure is not None:
                entries.append(failure)
                message = f"{message}\n{failure.message}"
            await self.expeditions.save(party)
        if not party.is_active:
            await self.locks.discard(party.expedition_id)
        return ActionResult(party, entries, message, party.pending)

    async def _check_defeat(self, party: Expedition) -> ProgressLogEntry | None:
        if not party.is_active or party.total_hearts > 0:
            return None
        last = party.progress_log[-1].character_name if party.progress_log else ""
        await self.lifecycle.fail(party)
        village = get_region(party.region).village.title()
        return self._log(
            party,
            last,
            "expedition_failed",
            f"The party collapses and is carried back to {village}. Everyone must recover for "
            f"{self.config.recovery_days} days.",
        )

    # -- roll ----------------------------------------------------------------
    async def roll(self, expedition_id: str, user_id: int, character_name: str) -> ActionResult:
        """Explore the current quadrant and resolve one weighted outcome."""

        return await self._act(expedition_id, user_id, character_name, self._roll)

    async def _roll(self, party: Expedition, index: int) -> _Step:
        payment = await self.ledger.pay(
            party, index, self.config.costs.roll_cost(party.quadrant_state)
        )
        slot = party.characters[index]
        context = RollContext(
            party=party,
            character_name=slot.name,
            square=party.square,
            quadrant=party.quadrant,
            map_discoveries=await self.sync.discoveries(party.square),
        )
        result = self.roller.roll(context)
        log.debug(
            "Expedition %s rolled %s for %s after %s reroll(s)",
            party.expedition_id,
            result.kind.value,
            slot.name,
            result.rerolls,
        )
        return await self._outcome_handlers[result.kind](party, index, payment)

    def _costs(self, payment: Payment, hearts: int = 0) -> Dict[str, int]:
        costs = payment.as_costs() if payment.amount else {}
        if hearts:
            costs["hearts"] = costs.get("hearts", 0) + hearts
        return {key: value for key, value in costs.items() if value}

    async def _on_monster(self, party: Expedition, index: int, payment: Payment) -> _Step:
        slot = party.characters[index]
        monster = self.content.monsters.random_monster(party.region, self._rng)
        if monster.tier >= self.config.raid_tier_threshold:
            return await self._on_raid_monster(party, index, payment, monster.name, monster.tier)
        encounter = self.combat.resolve(slot, monster)
        hearts_lost = 0
        if encounter.hearts_lost:
            damage = await self.ledger.damage(party, index, encounter.hearts_lost)
            hearts_lost = damage.hearts
        loot: Dict[str, int] = {}
        if encounter.can_loot:
            drop = self.content.monsters.roll_loot(monster, self._rng)
            if drop is not None:
                slot.found_items.append(drop.name)
                loot[drop.name] = 1
        if encounter.victory:
            message = f"{slot.name} defeats a {monster.name}"
            message += f" and loots {format_loot(loot)}." if loot else "."
        else:
            message = f"{slot.name} fights off a {monster.name} but loses {hearts_lost} heart(s)."
        entry = self._log(
            party,
            slot.name,
            OutcomeKind.MONSTER.value,
            message,
            loot=loot,
            costs=self._costs(payment, hearts_lost),
        )
        return _Step(message, [entry])

    async def _on_raid_monster(
        self, party: Expedition, index: int, payment: Payment, monster: str, tier: int
    ) -> _Step:
        slot = party.characters[index]
        started = await self.raids.start(
            monster, tier, slot.name, get_region(party.region).village, party.expedition_id
        )
        if started.success and started.raid_id:
            party.active_raid_id = started.raid_id
            message = (
                f"A tier {tier} {monster} ambushes {slot.name}! Raid {started.raid_id} has begun. "
                "Fight it out or retreat."
            )
        else:
            log.warning(
                "Raid against %s for expedition %s did not start: %s",
                monster,
                party.expedition_id,
                started.error,
            )
            message = f"{slot.name} spots a {monster} in the distance, but it lumbers away."
        entry = self._log(
            party, slot.name, OutcomeKind.MONSTER.value, message, costs=self._costs(payment)
        )
        return _Step(message, [entry])

    async def _on_item(self, party: Expedition, index: int, payment: Payment) -> _Step:
        slot = party.characters[index]
        item = self.content.items.random_item(party.region, self._rng)
        slot.found_items.append(item.name)
        message = f"{slot.name} finds {item.name}."
        entry = self._log(
            party,
            slot.name,
            OutcomeKind.ITEM.value,
            message,
            loot={item.name: 1},
            costs=self._costs(payment),
        )
        return _Step(message, [entry])

    async def _on_explored(self, party: Expedition, index: int, payment: Payment) -> _Step:
        slot = party.characters[index]
        newly = await self.sync.mark_explored(party)
        if newly:
            message = f"{slot.name} finishes exploring {party.square} {party.quadrant}. The party may move on."
        else:
            message = f"{slot.name} finds nothing new in {party.square} {party.quadrant}."
        entry = self._log(
            party, slot.name, OutcomeKind.EXPLORED.value, message, costs=self._costs(payment)
        )
        return _Step(message, [entry])

    async def _on_fairy(self, party: Expedition, index: int, payment: Payment) -> _Step:
        slot = party.characters[index]
        healed = await self.ledger.restore(party, hearts=self.config.fairy_hearts)
        message = f"A fairy finds {slot.name} and restores {-healed.hearts} heart(s) across the party."
        entry = self._log(party, slot.name, OutcomeKind.FAIRY.value, message, costs=self._costs(payment))
        return _Step(message, [entry])

    async def _on_chest(self, party: Expedition, index: int, payment: Payment) -> _Step:
        slot = party.characters[index]
        party.pending = PendingChoice(
            kind="chest",
            character_index=index,
            options=("open", "skip"),
            default="skip",
            expires_at=self._clock() + self.config.choice_timeout,
        )
        message = (
            f"{slot.name} finds a chest. Opening it costs {self.config.costs.chest} stamina "
            "and gives everyone an item."
        )
        entry = self._log(party, slot.name, OutcomeKind.CHEST.value, message, costs=self._costs(payment))
        return _Step(message, [entry])

    async def _on_old_map(self, party: Expedition, index: int, payment: Payment) -> _Step:
        slot = party.characters[index]
        slot.found_items.append(self.config.old_map_item)
        message = f"{slot.name} uncovers an {self.config.old_map_item}."
        entry = self._log(
            party,
            slot.name,
            OutcomeKind.OLD_MAP.value,
            message,
            loot={self.config.old_map_item: 1},
            costs=self._costs(payment),
        )
        return _Step(message, [entry])

    async def _on_safe_haven(self, party: Expedition, index: int, payment: Payment) -> _Step:
        slot = party.characters[index]
        await self.ledger.restore(
            party, hearts=self.config.safe_haven_hearts, stamina=self.config.safe_haven_stamina
        )
        message = f"{slot.name} finds a safe haven. Everyone catches their breath."
        entry = self._log(party, slot.name, OutcomeKind.CAMP.value, message, costs=self._costs(payment))
        return _Step(message, [entry])

    async def _on_discovery(
        self, kind: OutcomeKind, party: Expedition, index: int, payment: Payment
    ) -> _Step:
        slot = party.characters[index]
        key = f"{kind.value}-{secrets.token_hex(4)}"
        label = kind.value.replace("_", " ")
        options = ("accept", "decline", "cleanse") if kind is OutcomeKind.GROTTO else ("accept", "decline")
        party.pending = PendingChoice(
            kind="discovery",
            character_index=index,
            options=options,
            default="decline",
            expires_at=self._clock() + self.config.choice_timeout,
            payload={"discovery_key": key, "type": kind.value},
        )
        message = f"{slot.name} discovers a {label} in {party.square} {party.quadrant}. Mark it on the map?"
        entry = self._log(
            party, slot.name, kind.value, message, costs=self._costs(payment), discovery_key=key
        )
        return _Step(message, [entry])

    # -- choices -------------------------------------------------------------
    async def choose(
        self, expedition_id: str, user_id: int, character_name: str, option: str
    ) -> ActionResult:
        """Answer the party's pending choice; the roll that raised it already used the turn."""

        async with self.locks.hold(expedition_id):
            party, index = await self._resolve(expedition_id, user_id, character_name)
            settled = await self._settle_expired(party)
            pending = party.pending
            if pending is None:
                if settled:
                    return ActionResult(party, settled, settled[-1].message)
                raise InvariantViolation("There is nothing to decide right now.")
            if pending.character_index != index:
                raise NotYourTurn(character_name, party.characters[pending.character_index].name)
            choice = option.strip().lower()
            if choice not in pending.options:
                raise InvariantViolation(
                    f"Choose one of: {', '.join(pending.options)}."
                )
            step = await self._apply_choice(party, pending, choice)
            entries = step.entries
            message = step.message
            failure = await self._check_defeat(party)
            if failure is not None:
                entries.append(failure)
                message = f"{message}\n{failure.message}"
            await self.expeditions.save(party)
        return ActionResult(party, entries, message, party.pending)

    async def _apply_choice(self, party: Expedition, pending: PendingChoice, choice: str) -> _Step:
        index = pending.character_index
        slot = party.characters[index]
        if pending.kind == "chest":
            if choice == "open":
                payment = await self.ledger.pay(party, index, self.config.costs.chest)
                loot: Dict[str, int] = {}
                for member in party.characters:
                    item = self.content.items.random_item(party.region, self._rng)
                    member.found_items.append(item.name)
                    loot[item.name] = loot.get(item.name, 0) + 1
                party.pending = None
                message = f"{slot.name} opens the chest: {format_loot(loot)}."
                entry = self._log(
                    party, slot.name, "chest_opened", message, loot=loot, costs=self._costs(payment)
                )
            else:
                party.pending = None
                message = f"{slot.name} leaves the chest closed."
                entry = self._log(party, slot.name, "chest_skipped", message)
            return _Step(message, [entry], advance=False)

        key = str(pending.payload.get("discovery_key", ""))
        discovery = party.find_discovery(key)
        if discovery is None:
            party.pending = None
            raise InvariantViolation("The discovery has vanished from the log.")
        if choice == "decline":
            discovery.discovery_status = "declined"
            party.pending = None
            message = f"{slot.name} leaves the {discovery.outcome.replace('_', ' ')} unmarked."
            return _Step(message, [self._log(party, slot.name, "discovery_declined", message)], advance=False)
        if choice == "cleanse":
            await self.trials.ensure_cleansable(party)
            plan_payment(party, index, self.config.costs.cleanse)
        discovery.discovery_status = "confirmed"
        party.pending = None
        result = await self.sync.mirror_discovery(party, discovery)
        if result is not None and result.rejected:
            discovery.discovery_status = "declined"
            message = f"The {discovery.outcome.replace('_', ' ')} cannot be charted: {result.rejected}."
            return _Step(message, [self._log(party, slot.name, "discovery_rejected", message)], advance=False)
        loot: Dict[str, int] = {}
        if discovery.outcome == OutcomeKind.RELIC.value:
            slot.found_items.append(self.config.relic_item)
            loot[self.config.relic_item] = 1
        message = f"{slot.name} marks the {discovery.outcome.replace('_', ' ')} on the map."
        entries = [self._log(party, slot.name, "discovery_confirmed", message, loot=loot)]
        if choice == "cleanse":
            _, trial = await self.trials.cleanse(party, index)
            entries.append(self._trial_entry(party, index, trial))
            message = f"{message}\n{trial.message}"
        return _Step(message, entries, advance=False)

    async def _settle_expired(self, party: Expedition) -> list[ProgressLogEntry]:
        """Apply the default of a timed-out choice and persist the party."""

        pending = party.pending
        if pending is None or not pending.expired(self._clock()):
            return []
        try:
            step = await self._apply_choice(party, pending, pending.default)
        except (InsufficientResources, InvariantViolation) as exc:
            log.warning("Default choice for expedition %s failed: %s", party.expedition_id, exc)
            party.pending = None
            step = _Step(str(exc))
        for entry in step.entries:
            entry.message = f"(timed out) {entry.message}"
        await self.expeditions.save(party)
        log.info(
            "Applied default '%s' to expired %s choice on expedition %s",
            pending.default,
            pending.kind,
            party.expedition_id,
        )
        return list(step.entries)

    async def sweep_expired(self) -> list[ActionResult]:
        """Resolve every pending choice that has outlived its timeout."""

        results: list[ActionResult] = []
        now = self._clock()
        for candidate in await self.expeditions.list_active():
            if candidate.pending is None or not candidate.pending.expired(now):
                continue
            async with self.locks.hold(candidate.expedition_id):
                party = await self.expeditions.get(candidate.expedition_id)
                if party is None or not party.is_active:
                    continue
                entries = await self._settle_expired(party)
                failure = await self._check_defeat(party)
                if failure is not None:
                    entries.append(failure)
                    await self.expeditions.save(party)
            if entries:
                results.append(
                    ActionResult(party, entries, "\n".join(entry.message for entry in entries), party.pending)
                )
        return results

    # -- movement and resting ------------------------------------------------
    async def secure(self, expedition_id: str, user_id: int, character_name: str) -> ActionResult:
        return await self._act(expedition_id, user_id, character_name, self._secure)

    async def _secure(self, party: Expedition, index: int) -> _Step:
        if party.quadrant_state == "secured":
            raise InvariantViolation("This quadrant is already secured.")
        if party.quadrant_state != "explored":
            raise InvariantViolation("Explore the quadrant fully before securing it.")
        holders: list[tuple[CharacterSlot, str]] = []
        missing: list[str] = []
        for material in self.config.costs.secure_materials:
            holder = next(
                (
                    slot
                    for slot in party.characters
                    if slot.has_item(material) and (slot, material) not in holders
                ),
                None,
            )
            if holder is None:
                missing.append(material)
            else:
                holders.append((holder, material))
        if missing:
            raise InvariantViolation(f"Securing needs {', '.join(missing)} in the party's loadouts.")
        payment = await self.ledger.pay(party, index, self.config.costs.secure)
        for holder, material in holders:
            holder.take_item(material)
        await self.sync.mark_secured(party)
        slot = party.characters[index]
        message = f"{slot.name} secures {party.square} {party.quadrant}."
        entry = self._log(party, slot.name, "secured", message, costs=self._costs(payment))
        return _Step(message, [entry])

    async def move(
        self, expedition_id: str, user_id: int, character_name: str, destination: str
    ) -> ActionResult:
        async def action(party: Expedition, index: int) -> _Step:
            return await self._move(party, index, destination)

        return await self._act(expedition_id, user_id, character_name, action)

    def _parse_destination(self, party: Expedition, destination: str) -> Location:
        try:
            return parse_location(destination, default_square=party.square)
        except ValueError as exc:
            raise InvalidLocation(str(exc)) from exc

    async def _destination_state(self, party: Expedition, target: Location) -> str:
        if target.square == party.square and target.quadrant in party.quadrant_states:
            return party.quadrant_states[target.quadrant]
        return await self.sync.quadrant_status(target.square, target.quadrant)

    def _is_home(self, party: Expedition, target: Location) -> bool:
        info = get_region(party.region)
        return target == Location(info.start_square, info.start_quadrant)

    async def _move(self, party: Expedition, index: int, destination: str) -> _Step:
        origin = Location(party.square, party.quadrant)
        target = self._parse_destination(party, destination)
        if target == origin:
            raise InvalidLocation("The party is already there.")
        if not is_adjacent(origin, target):
            raise InvalidLocation(f"{target} is not next to {origin}.")
        state = await self._destination_state(party, target)
        if state == "inaccessible":
            raise InvalidLocation(f"{target} cannot be entered.")
        leaving = target.square != party.square
        if leaving and not self._square_resolved(party):
            if not (self._is_home(party, target) or state in ("explored", "secured")):
                raise InvalidLocation(
                    f"Explore every quadrant of {party.square} before leaving it."
                )
        payment = await self.ledger.pay(party, index, self.config.costs.move_cost(state))
        if leaving:
            self._prune_discoveries(party, party.square)
        party.square = target.square
        party.quadrant = target.quadrant
        if leaving:
            party.quadrant_states = {}
            party.quadrant_state = state
            await self.sync.reconcile(party)
        else:
            party.quadrant_state = state
        slot = party.characters[index]
        message = f"{slot.name} leads the party to {target}."
        entry = self._log(party, slot.name, "moved", message, costs=self._costs(payment))
        return _Step(message, [entry])

    def _square_resolved(self, party: Expedition) -> bool:
        return all(
            party.quadrant_states.get(quadrant, "unexplored") in RESOLVED_STATES
            for quadrant in QUADRANTS
        )

    @staticmethod
    def _prune_discoveries(party: Expedition, square: str) -> int:
        kept: list[ProgressLogEntry] = []
        pruned = 0
        for entry in party.progress_log:
            if (
                entry.is_discovery
                and entry.at_location(square)
                and entry.discovery_status in ("pending", "declined")
                and not entry.mirrored
            ):
                pruned += 1
                continue
            kept.append(entry)
        party.progress_log = kept
        if pruned:
            log.debug("Pruned %s unconfirmed discoveries from %s in %s", pruned, party.expedition_id, square)
        return pruned

    async def item(
        self, expedition_id: str, user_id: int, character_name: str, item_name: str
    ) -> ActionResult:
        async def action(party: Expedition, index: int) -> _Step:
            slot = party.characters[index]
            item = self.content.items.find(item_name)
            if item is None or not item.is_healing:
                raise InvariantViolation(f"{item_name} cannot be used to recover.")
            carried = slot.has_item(item.name) or any(
                found.casefold() == item.name.casefold() for found in slot.found_items
            )
            if not carried:
                raise InvariantViolation(f"{slot.name} is not carrying {item.name}.")
            gained = await self.ledger.restore(
                party,
                hearts=item.hearts_restored,
                stamina=item.stamina_restored,
                indices=[index],
            )
            if slot.take_item(item.name) is None:
                _take_found(slot, item.name)
            message = (
                f"{slot.name} uses {item.name}, recovering {-gained.hearts} heart(s) "
                f"and {-gained.stamina} stamina."
            )
            entry = self._log(party, slot.name, "item_used", message)
            return _Step(message, [entry])

        return await self._act(expedition_id, user_id, character_name, action)

    async def camp(self, expedition_id: str, user_id: int, character_name: str) -> ActionResult:
        async def action(party: Expedition, index: int) -> _Step:
            if party.quadrant_state not in ("explored", "secured"):
                raise InvariantViolation("The party can only camp in explored or secured quadrants.")
            cost = 0 if party.quadrant_state == "secured" else self.config.costs.camp
            payment = await self.ledger.pay(party, index, cost)
            await self.ledger.restore(party, hearts=self.config.camp_hearts)
            slot = party.characters[index]
            message = f"{slot.name} sets up camp. Everyone rests and recovers."
            entry = self._log(party, slot.name, "camp_rest", message, costs=self._costs(payment))
            return _Step(message, [entry])

        return await self._act(expedition_id, user_id, character_name, action)

    async def end(self, expedition_id: str, user_id: int, character_name: str) -> ActionResult:
        """Finish the expedition at the region's home quadrant and split what is left."""

        async with self.locks.hold(expedition_id):
            party, index = await self._resolve(expedition_id, user_id, character_name)
            await self._settle_expired(party)
            self._guard(party)
            if not self._is_home(party, Location(party.square, party.quadrant)):
                info = get_region(party.region)
                raise InvalidLocation(
                    f"Return to {info.start_square} {info.start_quadrant} to end the expedition."
                )
            shares = await self.lifecycle.succeed(party)
            message = f"The party returns to {get_region(party.region).village.title()}.\n{share_summary(shares)}"
            entry = self._log(party, party.characters[index].name, "expedition_end", message)
            await self.expeditions.save(party)
        await self.locks.discard(party.expedition_id)
        return ActionResult(party, [entry], message)

    # -- raids ---------------------------------------------------------------
    async def retreat(self, expedition_id: str, user_id: int, character_name: str) -> ActionResult:
        """Try to break away from the raid tied to the expedition."""

        async def action(party: Expedition, index: int) -> _Step:
            raid_id = party.active_raid_id
            if raid_id is None:
                raise InvariantViolation("There is no raid to retreat from.")
            raid = await self.raids.get(raid_id)
            slot = party.characters[index]
            if raid is None or not raid.is_active:
                party.active_raid_id = None
                message = "The raid has already ended."
                return _Step(message, [self._log(party, slot.name, "raid_over", message)], advance=False)
            payment = await self.ledger.pay(party, index, self.config.costs.retreat)
            chance = self.config.retreat_chance(raid.failed_retreat_attempts)
            entries: list[ProgressLogEntry] = []
            if self._rng.random() < chance:
                await self._raid_write(self.raids.end_as_retreat, raid_id)
                party.active_raid_id = None
                message = f"{slot.name} leads a successful retreat from {raid.monster_name}."
                entries.append(self._log(party, slot.name, "retreat", message, costs=self._costs(payment)))
                trial = await self.trials.raid_finished(party, raid_id, victory=False)
                if trial is not None:
                    entries.append(self._trial_entry(party, index, trial))
                    message = f"{message}\n{trial.message}"
            else:
                await self._raid_write(self.raids.record_failed_retreat, raid_id)
                message = (
                    f"{slot.name} fails to escape {raid.monster_name} "
                    f"({int(round(chance * 100))}% chance)."
                )
                entries.append(
                    self._log(party, slot.name, "retreat_failed", message, costs=self._costs(payment))
                )
            return _Step(message, entries)

        return await self._act(expedition_id, user_id, character_name, action, during_raid=True)

    async def _raid_write(self, operation: Callable[[str], Awaitable[object]], raid_id: str) -> None:
        try:
            await operation(raid_id)
        except OSError as exc:
            log.warning("Could not update raid %s: %s", raid_id, exc)

    async def raid_over(self, raid_id: str, result: str) -> ActionResult | None:
        """Release the expedition bound to ``raid_id`` once the raid is decided."""

        victory = result.strip().lower() in ("victory", "won", "win", "defeated")
        found = await self.expeditions.find_by_raid(raid_id)
        if found is None:
            log.info("Raid %s ended with no expedition waiting on it", raid_id)
            return None
        async with self.locks.hold(found.expedition_id):
            party = await self.expeditions.get(found.expedition_id)
            if party is None or party.active_raid_id != raid_id:
                return None
            party.active_raid_id = None
            await self._raid_write(
                lambda key: self.raids.finish(key, "defeated" if victory else "failed"), raid_id
            )
            await self._refresh_slots(party)
            index = party.current_turn % party.member_count
            message = "The party wins the raid!" if victory else "The raid is lost."
            entries = [self._log(party, party.characters[index].name, "raid_over", message)]
            trial = await self.trials.raid_finished(party, raid_id, victory)
            if trial is not None:
                entries.append(self._trial_entry(party, index, trial))
                message = f"{message}\n{trial.message}"
            failure = await self._check_defeat(party)
            if failure is not None:
                entries.append(failure)
                message = f"{message}\n{failure.message}"
            await self.expeditions.save(party)
        log.info("Raid %s over for expedition %s (%s)", raid_id, party.expedition_id, result)
        return ActionResult(party, entries, message, party.pending)

    async def _refresh_slots(self, party: Expedition) -> None:
        """Pull hearts and stamina back from the character store after a raid."""

        for slot in party.characters:
            try:
                character = await self.characters.get(slot.character_id)
            except OSError as exc:
                log.warning("Could not refresh %s after raid: %s", slot.name, exc)
                continue
            if character is None:
                continue
            slot.current_hearts = max(0, min(character.current_hearts, slot.max_hearts))
            slot.current_stamina = max(0, min(character.current_stamina, slot.max_stamina))
        party.recompute_totals()

    # -- grottos -------------------------------------------------------------
    async def _grotto_here(self, party: Expedition, square: str, quadrant: str) -> ProgressLogEntry | None:
        """Return the confirmed log entry for a grotto, or raise if none is known there."""

        for entry in party.entries_at(square, quadrant):
            if entry.outcome == OutcomeKind.GROTTO.value and entry.discovery_status == "confirmed":
                return entry
        for discovery in await self.sync.discoveries_in(square, quadrant):
            if discovery.type == OutcomeKind.GROTTO.value:
                return None
        raise InvariantViolation(f"There is no known grotto at {square} {quadrant}.")

    async def grotto_cleanse(self, expedition_id: str, user_id: int, character_name: str) -> ActionResult:
        async def action(party: Expedition, index: int) -> _Step:
            entry = await self._grotto_here(party, party.square, party.quadrant)
            _, result = await self.trials.cleanse(party, index)
            if entry is not None and not entry.mirrored:
                await self.sync.mirror_discovery(party, entry)
            return _Step(result.message, [self._trial_entry(party, index, result)])

        return await self._act(expedition_id, user_id, character_name, action)

    async def _trial_action(
        self,
        expedition_id: str,
        user_id: int,
        character_name: str,
        run: Callable[[Expedition, int], Awaitable[tuple[object, TrialResult]]],
    ) -> ActionResult:
        async def action(party: Expedition, index: int) -> _Step:
            _, result = await run(party, index)
            return _Step(
                result.message, [self._trial_entry(party, index, result)], advance=result.consumes_turn
            )

        return await self._act(expedition_id, user_id, character_name, action)

    async def grotto_continue(self, expedition_id: str, user_id: int, character_name: str) -> ActionResult:
        return await self._trial_action(
            expedition_id, user_id, character_name, self.trials.continue_trial
        )

    async def grotto_target_practice(
        self, expedition_id: str, user_id: int, character_name: str
    ) -> ActionResult:
        return await self._trial_action(
            expedition_id, user_id, character_name, self.trials.target_practice
        )

    async def grotto_puzzle(
        self,
        expedition_id: str,
        user_id: int,
        character_name: str,
        items: str,
        description: str = "",
    ) -> ActionResult:
        async def run(party: Expedition, index: int):
            return await self.trials.submit_puzzle(party, index, items, description)

        return await self._trial_action(expedition_id, user_id, character_name, run)

    async def grotto_maze(
        self, expedition_id: str, user_id: int, character_name: str, action: str
    ) -> ActionResult:
        async def run(party: Expedition, index: int):
            return await self.trials.maze(party, index, action.strip().lower())

        return await self._trial_action(expedition_id, user_id, character_name, run)

    async def grotto_travel(
        self, expedition_id: str, user_id: int, character_name: str, location: str
    ) -> ActionResult:
        """Move within the current square to a quadrant holding an uncleansed grotto."""

        async def action(party: Expedition, index: int) -> _Step:
            target = self._parse_destination(party, location)
            if target.square != party.square:
                raise InvalidLocation("Grotto travel stays within the current square.")
            if target == Location(party.square, party.quadrant):
                raise InvalidLocation("The party is already at that grotto.")
            await self._grotto_here(party, target.square, target.quadrant)
            existing = await self.trials.store.get(target.square, target.quadrant, party.expedition_id)
            if existing is not None and not existing.is_open:
                raise InvariantViolation("That grotto has already been cleansed on this expedition.")
            state = await self._destination_state(party, target)
            payment = await self.ledger.pay(party, index, self.config.costs.move_cost(state))
            party.quadrant = target.quadrant
            party.quadrant_state = state
            slot = party.characters[index]
            message = f"{slot.name} leads the party to the grotto at {target}."
            entry = self._log(party, slot.name, "grotto_travel", message, costs=self._costs(payment))
            return _Step(message, [entry])

        return await self._act(expedition_id, user_id, character_name, action)

    async def review_puzzle(self, expedition_id: str, approved: bool) -> ActionResult:
        """Approve or deny the puzzle offering waiting on ``expedition_id``."""

        async with self.locks.hold(expedition_id):
            party = await self.expeditions.get(expedition_id)
            if party is None or not party.is_active:
                raise ExpeditionNotFound(expedition_id)
            waiting = [
                grotto
                for grotto in await self.trials.store.list_for_expedition(party.expedition_id)
                if grotto.is_open and grotto.puzzle is not None and grotto.puzzle.status == "awaiting_review"
            ]
            if not waiting:
                raise InvariantViolation("No puzzle offering is waiting for review.")
            grotto = waiting[0]
            result = await self.trials.review_puzzle(party, grotto, approved)
            submitter = party.slot_index(grotto.puzzle.submitted_by or "") if grotto.puzzle else None
            index = submitter if submitter is not None else party.current_turn % party.member_count
            entry = self._trial_entry(party, index, result)
            await self.expeditions.save(party)
        return ActionResult(party, [entry], result.message, party.pending)


def _take_found(slot: CharacterSlot, item_name: str) -> None:
    lowered = item_name.casefold()
    for position, found in enumerate(slot.found_items):
        if found.casefold() == lowered:
            del slot.found_items[position]
            return
