import logging
import threading
import time
import requests

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum

from config import ConfigError
from controller import LoopMode, start_session
from errors import CommandRejected, TransientUnavailable

log = logging.getLogger(__name__)

# be done a little before the car actually leaves
DEPARTURE_MARGIN = timedelta(minutes=5)


class TripStage(Enum):
    PRIORITY = 1
    MAX_RATE = 2
    SECONDARY = 3


# stands in for a curve in the plan: no feedback loop, charger at full rate
MAX_RATE = TripStage.MAX_RATE


@dataclass(frozen=True)
class TripPlan:
    departure: datetime
    target_soc: int
    stages: tuple

    @property
    def priority_curve(self):
        return self.stages[0]

    @property
    def secondary_curve(self):
        return self.stages[2]

    def remaining_minutes(self, now: datetime) -> float:
        return max(0.0, (self.departure - now).total_seconds() / 60)


def projected_minutes(state, target_soc: int) -> float:
    """Minutes the car needs to reach target_soc at the rate it is charging now."""
    if not state.charge_limit_soc or not state.charge_current_request_max:
        return 0.0
    return (1.0 * state.minutes_to_full_charge * target_soc / state.charge_limit_soc
            * state.charge_current_request / state.charge_current_request_max)


class TripPlanner:
    def __init__(self, settings):
        self.settings = settings

    def plan(self, hours: float, target_soc: int, now: datetime | None = None) -> TripPlan:
        now = now or datetime.now()
        priority = self.settings.curve(self.settings.trip_priority_curve)
        if priority is None:
            raise ConfigError(f"{self.settings.trip_priority_curve} charge curve not found")
        secondary = self.settings.curve(self.settings.trip_secondary_curve)
        if secondary is None:
            raise ConfigError(f"{self.settings.trip_secondary_curve} charge curve not found")
        return TripPlan(
            departure=now + timedelta(hours=hours) - DEPARTURE_MARGIN,
            target_soc=target_soc,
            stages=(priority, MAX_RATE, secondary),
        )

    def next_stage(self, plan: TripPlan, stage: TripStage, state, now: datetime) -> TripStage:
        """Forward-only stage transition for the latest charge state."""
        if stage == TripStage.PRIORITY and state.is_charging:
            remaining = plan.remaining_minutes(now)
            needed = projected_minutes(state, plan.target_soc)
            if remaining > 0 and needed > remaining:
                log.info("Need %.1f minutes to reach %s%% but only %.1f remain, charging at maximum rate",
                         needed, plan.target_soc, remaining)
                stage = TripStage.MAX_RATE
        if stage != TripStage.SECONDARY and state.battery_level >= plan.target_soc:
            stage = TripStage.SECONDARY
        return stage


class TripRunner:
    """Runs a TripPlan: one stage at a time, each loop fully stopped before the next starts."""

    def __init__(self, vehicle, telemetry, settings, planner=None, loop_factory=None, now=datetime.now):
        self.vehicle = vehicle
        self.settings = settings
        self.planner = planner or TripPlanner(settings)
        self.loop_factory = loop_factory or (
            lambda curve, mode: start_session(vehicle, telemetry, settings, curve, mode))
        self.now = now
        self.plan = None
        self.stage = None
        self.loop = None
        self.max_amps_pending = False

    def begin(self, hours: float, target_soc: int):
        self.plan = self.planner.plan(hours, target_soc, self.now())
        log.info("Charging from solar for an upcoming trip in %s hours with required SOC of %s%%",
                 hours, target_soc)
        try:
            self.vehicle.set_charge_limit_if_lower(target_soc)
        except CommandRejected as e:
            log.warning("%s", e)
        except (requests.RequestException, TransientUnavailable) as e:
            log.warning("Charge limit not raised as vehicle is not available: %s", e)
        self.stage = TripStage.PRIORITY
        self.loop = self.loop_factory(self.plan.priority_curve, LoopMode.PRIORITY)

    def check(self) -> bool:
        """One trip check. False once trip monitoring should end."""
        if self.stage != TripStage.MAX_RATE and not self.loop.is_active:
            return False

        if self.stage == TripStage.MAX_RATE:
            try:
                state = self.vehicle.get_charge_state(force=True)
            except (requests.RequestException, TransientUnavailable) as e:
                log.warning("Vehicle not available: %s", e)
                return True
        else:
            state = self.vehicle.charge_state
        if state is None:
            return True

        if self.stage == TripStage.MAX_RATE and not state.is_charging:
            log.info("Charging at maximum rate has stopped (%s)", state.charging_state.value)
            return False
        if self.stage == TripStage.MAX_RATE and self.max_amps_pending:
            self._set_max_amps(state)

        stage = self.planner.next_stage(self.plan, self.stage, state, self.now())
        if stage != self.stage:
            self._enter(stage, state)

        if self.stage == TripStage.MAX_RATE:
            log.info("Charging at maximum amps until SOC %s%% reaches %s%%",
                     state.battery_level, self.plan.target_soc)
        return True

    def _enter(self, stage: TripStage, state):
        self._stop_loop()
        self.stage = stage
        if stage == TripStage.MAX_RATE:
            self.max_amps_pending = True
            self._set_max_amps(state)
        elif stage == TripStage.SECONDARY:
            self.max_amps_pending = False
            self.loop = self.loop_factory(self.plan.secondary_curve, LoopMode.STANDARD)

    def _set_max_amps(self, state):
        """Failures the car may recover from are retried on the next check."""
        try:
            self.vehicle.set_charging_amps(state.charge_current_request_max)
        except CommandRejected as e:
            log.warning("%s", e)
            self.max_amps_pending = e.retryable
            return
        except (requests.RequestException, TransientUnavailable) as e:
            log.warning("Maximum amps not set as vehicle is not available: %s", e)
            return
        self.max_amps_pending = False

    def _stop_loop(self):
        if self.loop is not None:
            self.loop.cancel()
            self.loop.join()
            self.loop = None

    def run(self, hours: float, target_soc: int, cancelled: threading.Event | None = None,
            poll: float = 0.5, clock=time.monotonic):
        cancelled = cancelled or threading.Event()
        self.begin(hours, target_soc)
        last_check = clock()
        try:
            while not cancelled.is_set():
                if self.stage != TripStage.MAX_RATE and not self.loop.is_active:
                    break
                if clock() - last_check >= self.settings.trip_check_interval:
                    last_check = clock()
                    if not self.check():
                        break
                cancelled.wait(poll)
        finally:
            self._stop_loop()
            log.info("Trip monitoring has stopped")
