import logging
import math
import threading
import time
import requests

from dataclasses import dataclass
from enum import Enum

from errors import ChargerUnavailable, CommandRejected, SafetyAbort, TransientUnavailable
from tesla import ChargingState

log = logging.getLogger(__name__)

# a stopped charger reports a couple of volts; use the nominal supply instead
MIN_PLAUSIBLE_VOLTAGE = 100
STABLE_DRAW_SECONDS = 60
BUFFER_STEP_KW = 0.05
STATS_INTERVAL = 600
REPORT_INTERVAL = 300


class LoopMode(Enum):
    STANDARD = "standard"
    # trip stage 1: don't let a grid spike stop the charge
    PRIORITY = "priority"


@dataclass
class LoopState:
    loop_duration: int
    grid_buffer: float = 0.0
    sustained_draw_seconds: int = 0
    not_charging_seconds: int = 0
    stable_draw_seconds: int = 0
    stats_seconds: int = STATS_INTERVAL


def kw_per_amp(state, nominal_voltage: float) -> float:
    voltage = state.charger_voltage
    if voltage < MIN_PLAUSIBLE_VOLTAGE:
        voltage = nominal_voltage
    return voltage * (state.charger_phases or 1) / 1000.0


def power_to_amps(power_kw: float, state, nominal_voltage: float) -> int:
    """Whole amps that fit in power_kw, rounded toward zero."""
    per_amp = kw_per_amp(state, nominal_voltage)
    if per_amp <= 0:
        return 0
    return int(math.floor(power_kw / per_amp))


def ramp(amps: int, percentage: float) -> int:
    """Apply a ramp percentage without ever rounding a real change down to nothing."""
    if amps == 0:
        return 0
    return max(1, int(round(amps * percentage)))


class AmpDeltaCalculator:
    """
    Turns a power delta into a charging current command.

    power_delta_kw > 0 means the site imports and charging must shrink,
    < 0 means there is surplus to absorb. Returns the new amps when a
    command was sent, otherwise 0. Raises ChargerUnavailable when the
    session can't continue.
    """

    def __init__(self, vehicle, settings):
        self.vehicle = vehicle
        self.minimum_amps = settings.minimum_charging_amps
        self.ramp_up = settings.ramp_up_percentage
        self.ramp_down = settings.ramp_down_percentage
        self.nominal_voltage = settings.nominal_voltage

    def amps(self, power_kw, state) -> int:
        return power_to_amps(power_kw, state, self.nominal_voltage)

    def charge_delta(self, power_delta_kw: float, home_load_kw: float) -> int:
        cached = self.vehicle.charge_state
        if power_delta_kw < 0 and cached is not None:
            # not even one amp of surplus, no point asking the car
            if self.amps(-power_delta_kw, cached) == 0:
                return 0

        state = self.vehicle.get_charge_state()
        if state is None:
            log.warning("Charger is: not available")
            raise ChargerUnavailable("charge state not available")

        charging_state = state.charging_state
        if charging_state == ChargingState.DISCONNECTED:
            log.warning("Charger is: %s", charging_state.value)
            raise ChargerUnavailable("charger disconnected")
        if charging_state == ChargingState.STOPPED:
            return self._stopped(state, power_delta_kw)
        if charging_state == ChargingState.COMPLETE:
            if state.charge_current_request != self.minimum_amps:
                # ready for the next session
                self.vehicle.set_charging_amps(self.minimum_amps)
            return 0
        if charging_state != ChargingState.CHARGING:
            log.info("Charger is: %s", charging_state.value)
            return 0
        return self._charging(state, power_delta_kw, home_load_kw)

    def _stopped(self, state, power_delta_kw) -> int:
        log.info("Charger is: %s.", state.charging_state.value)
        ceiling = state.charge_limit_soc - 1
        if state.battery_level >= ceiling:
            log.info("Monitoring stopped as %s has reached or exceeded %s", state.battery_level, ceiling)
            raise ChargerUnavailable(f"battery level {state.battery_level} at limit")

        minimum_w = kw_per_amp(state, self.nominal_voltage) * 1000 * self.minimum_amps
        if power_delta_kw * 1000 + minimum_w < 0:
            log.info("Starting charging as battery level %s is less than %s", state.battery_level, ceiling)
            self.vehicle.start_charging()
        else:
            log.info("Charging not starting as available power %sw is less than minimum of %sw",
                     round(-power_delta_kw * 1000), round(minimum_w))
        return 0

    def _charging(self, state, power_delta_kw, home_load_kw) -> int:
        current = state.charger_actual_current
        log.info("Charging at: %s amps", current)

        consumption_amps = self.amps(home_load_kw, state)
        if consumption_amps < current:
            log.info("Consumption in amps: %s indicates charging is not ramped to indicated charge rate.",
                     consumption_amps)
            if power_delta_kw > 0:
                return 0

        if power_delta_kw > 0:
            if current <= self.minimum_amps:
                return 0
            amps = max(1, self.amps(power_delta_kw, state))
            amps = current - ramp(amps, self.ramp_down)
            amps = max(self.minimum_amps, amps)
            self.vehicle.set_charging_amps(amps)
            return amps

        maximum = state.charge_current_request_max
        if current >= maximum:
            return 0
        amps = self.amps(-power_delta_kw, state)
        if amps <= 0:
            return 0
        amps = current + ramp(amps, self.ramp_up)
        amps = min(maximum, max(self.minimum_amps, amps))
        self.vehicle.set_charging_amps(amps)
        return amps


class BufferController:
    """Grid buffer (kW): fast reset to the curve under import, slow decay when calm."""

    def __init__(self, curve, loop_state: LoopState):
        self.curve = curve
        self.state = loop_state

    def reset(self, battery_level: int) -> float:
        self.state.grid_buffer = self.curve.buffer_for(battery_level)
        return self.state.grid_buffer

    def decay(self, battery_level: int) -> bool:
        floor = self.curve.buffer_for(battery_level) / 2
        buffer = self.state.grid_buffer
        if self.state.stable_draw_seconds <= STABLE_DRAW_SECONDS or buffer <= floor:
            return False
        if buffer > 0:
            buffer = max(round(buffer - BUFFER_STEP_KW, 2), round(floor, 2))
        else:
            buffer = round(buffer + BUFFER_STEP_KW, 2)
        self.state.grid_buffer = buffer
        self.state.stable_draw_seconds = 0
        return True


class SafetyMonitor:
    def __init__(self, settings, mode: LoopMode, loop_state: LoopState):
        self.sustained_limit = settings.sustained_draw_duration
        self.not_charging_limit = settings.not_charging_duration
        self.stop_allowed = mode == LoopMode.STANDARD or settings.priority_allows_stop
        self.state = loop_state

    def record_draw(self, sustained: bool, elapsed: int) -> bool:
        """True when a stop command is due. Fires once, then the timer starts over."""
        if not sustained:
            self.state.sustained_draw_seconds = 0
            return False
        before = self.state.sustained_draw_seconds
        self.state.sustained_draw_seconds += elapsed
        if self.state.sustained_draw_seconds >= self.sustained_limit and self.stop_allowed:
            self.state.sustained_draw_seconds = 0
            return True
        _report("Sustained draw", before, self.state.sustained_draw_seconds, self.sustained_limit)
        return False

    def record_charging(self, charging: bool, elapsed: int):
        if charging:
            self.state.not_charging_seconds = 0
            return
        before = self.state.not_charging_seconds
        self.state.not_charging_seconds += elapsed
        if self.state.not_charging_seconds >= self.not_charging_limit:
            log.info("Not charging duration limit of %s reached.", self.not_charging_limit)
            raise SafetyAbort("not charging")
        _report("Not charging duration", before, self.state.not_charging_seconds, self.not_charging_limit)


def _report(label, before, after, limit):
    if after // REPORT_INTERVAL > before // REPORT_INTERVAL:
        log.info("%s %s/%s", label, after, limit)


class LoopScheduler:
    def __init__(self, minimum: int, maximum: int, loop_state: LoopState):
        self.minimum = minimum
        self.maximum = maximum
        self.state = loop_state

    def idle(self):
        self.state.loop_duration = min(self.state.loop_duration + self.minimum, self.maximum)

    def reset(self):
        self.state.loop_duration = self.minimum

    def sleep_for(self, body_seconds: float) -> float:
        return max(self.minimum, self.state.loop_duration - body_seconds)


class ControlLoop:
    """
    One charging session. run() blocks; start() runs it on a daemon thread.
    cancel() is honoured at the top of the next iteration, or right away
    while sleeping.
    """

    def __init__(self, vehicle, telemetry, settings, curve, mode=LoopMode.STANDARD, clock=time.monotonic):
        self.vehicle = vehicle
        self.telemetry = telemetry
        self.settings = settings
        self.curve = curve
        self.mode = mode
        self.clock = clock
        self.calculator = AmpDeltaCalculator(vehicle, settings)
        self.state = None
        self.buffer = None
        self.safety = None
        self.scheduler = None
        self._last_tick = None
        self._cancelled = threading.Event()
        self._active = False
        self._thread = None

    @property
    def is_active(self) -> bool:
        return self._active

    def start(self):
        self._active = True
        self._thread = threading.Thread(target=self.run, name=f"charge-{self.curve.name}", daemon=True)
        self._thread.start()
        return self

    def cancel(self):
        self._cancelled.set()

    def join(self, timeout=None):
        if self._thread is not None:
            self._thread.join(timeout)

    def begin(self):
        log.info("Using charge curve %s (%s mode)", self.curve.name, self.mode.value)
        charge_state = self.vehicle.charge_state or self.vehicle.get_charge_state()
        if charge_state is None:
            raise ChargerUnavailable("charge state not available")
        self.state = LoopState(loop_duration=self.settings.min_loop_sleep_duration)
        self.buffer = BufferController(self.curve, self.state)
        self.safety = SafetyMonitor(self.settings, self.mode, self.state)
        self.scheduler = LoopScheduler(self.settings.min_loop_sleep_duration,
                                       self.settings.max_loop_sleep_duration, self.state)
        self.buffer.reset(charge_state.battery_level)
        self._last_tick = None

    def run(self):
        self._active = True
        try:
            self.begin()
            while not self._cancelled.is_set():
                self._cancelled.wait(self.step())
        except ChargerUnavailable as e:
            log.warning("Monitor stopped due to failure: %s", e)
        except SafetyAbort:
            log.info("Monitor stopped as charging is not happening.")
        except Exception:
            log.exception("Monitor stopped due to failure.")
        finally:
            self._active = False

    def step(self) -> float:
        """One iteration. Returns the seconds to sleep before the next."""
        if self.state is None:
            self.begin()
        started = self.clock()
        minimum = self.settings.min_loop_sleep_duration

        try:
            reading = self.telemetry.get_telemetry()
        except (requests.RequestException, TransientUnavailable) as e:
            log.warning("Telemetry not available: %s", e)
            return minimum
        if reading is None or reading.is_empty:
            log.warning("Telemetry not available.")
            return minimum

        log.info("Solar:%.2f Home:%.2f Grid:%.2f Buffer:%.2f",
                 reading.solar_kw, reading.load_kw, reading.grid_kw, self.state.grid_buffer)

        try:
            sustained = self._adjust(reading)
        except (requests.RequestException, TransientUnavailable) as e:
            log.warning("Vehicle not available: %s", e)
            return minimum
        except CommandRejected as e:
            log.warning("%s", e)
            if e.retryable:
                return minimum
            sustained = False

        now = self.clock()
        elapsed = 0 if self._last_tick is None else int(round(now - self._last_tick))
        self._last_tick = now

        drawn = self.state.sustained_draw_seconds + elapsed if sustained else 0
        if self.safety.record_draw(sustained, elapsed):
            self._stop(f"grid draw over grid sustained draw limit of {self.settings.grid_max_sustained_draw} "
                       f"for {drawn} seconds")

        charge_state = self.vehicle.charge_state
        self.safety.record_charging(charge_state is not None and charge_state.is_charging, elapsed)

        self._stats(charge_state, elapsed)
        return self.scheduler.sleep_for(self.clock() - started)

    def _adjust(self, reading) -> bool:
        """Run the calculator. Returns True when the draw counts as sustained."""
        grid = reading.grid_kw
        delta = grid + self.state.grid_buffer
        changed = self.calculator.charge_delta(delta, reading.load_kw)
        charge_state = self.vehicle.charge_state

        if delta > 0:
            sustained = False
            if changed == 0 and charge_state is not None and charge_state.is_charging:
                if grid > self.settings.grid_max_draw and self.safety.stop_allowed:
                    self._stop(f"grid draw {grid} is over grid draw max of {self.settings.grid_max_draw}")
                elif grid > self.settings.grid_max_sustained_draw:
                    sustained = True
            self.scheduler.reset()
            self.state.stable_draw_seconds = 0
            self.buffer.reset(charge_state.battery_level)
            return sustained

        if changed == 0:
            self.state.stable_draw_seconds += self.state.loop_duration
            self.buffer.decay(charge_state.battery_level)
            self.scheduler.idle()
        else:
            self.scheduler.reset()
            self.state.stable_draw_seconds = 0
        return False

    def _stop(self, reason):
        try:
            self.vehicle.stop_charging(reason)
        except CommandRejected as e:
            log.warning("%s", e)
        except (requests.RequestException, TransientUnavailable) as e:
            log.warning("Charging not stopped as vehicle is not available: %s", e)

    def _stats(self, charge_state, elapsed):
        if self.state.stats_seconds < STATS_INTERVAL:
            self.state.stats_seconds += elapsed
            return
        self.state.stats_seconds = 0
        if charge_state is None:
            return
        current_km, full_km = charge_state.range_km()
        log.info("Battery level %s/%s", charge_state.battery_level, charge_state.charge_limit_soc)
        log.info("Range %s/%s km", current_km, full_km)
        log.info("Charge added %skWh", charge_state.charge_energy_added)
        log.info("Time to full charge is %s hours", charge_state.time_to_full_charge)


def start_session(vehicle, telemetry, settings, curve, mode=LoopMode.STANDARD) -> ControlLoop:
    """Start a control loop on its own thread and hand back the cancellable handle."""
    return ControlLoop(vehicle, telemetry, settings, curve, mode).start()
