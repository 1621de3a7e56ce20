import time
import logging
import click
import requests

from datetime import datetime

from config import ConfigError, load_settings
from controller import start_session
from errors import CommandRejected, TransientUnavailable
from sensors import PowerwallSensor, PulseSensor
from tesla import OwnerApi, TeslaVehicle, distance_m
from trip import TripRunner

log = logging.getLogger(__name__)


def build_clients(settings):
    api = OwnerApi(
        access_token=settings.tesla_access_token,
        refresh_token=settings.tesla_refresh_token,
        client_id=settings.tesla_client_id,
    )
    vehicle = TeslaVehicle(
        api,
        minimum_state_of_charge=settings.minimum_state_of_charge,
        stopped_cache_minutes=settings.stopped_cache_minutes,
    )
    if settings.telemetry_source == "powerwall":
        telemetry = PowerwallSensor(api)
    else:
        telemetry = PulseSensor(settings.pulse_url, settings.pulse_client_id, settings.pulse_refresh_token)
    return vehicle, telemetry


def prepare_session(vehicle, telemetry, settings) -> bool:
    """
    Check the sun is up and find the car parked at home.
    Binds `vehicle` to it and returns True when charging can begin.
    """
    try:
        site = telemetry.get_site()
        reading = telemetry.get_telemetry()
    except (requests.RequestException, RuntimeError) as e:
        click.echo(f"Solar telemetry is not currently available: {e}")
        return False

    click.echo(f"Current solar production is {reading.solar_kw}kW")
    if reading.solar_kw <= 0 or reading.daytime is False:
        click.echo(f"Solar not currently producing {reading.solar_kw} or is night time")
        return False

    try:
        vehicles = vehicle.vehicles()
    except (requests.RequestException, TransientUnavailable) as e:
        click.echo(f"Tesla vehicles are not currently available: {e}")
        return False
    if not vehicles:
        click.echo("No Tesla vehicles found")
        return False

    selected = None
    closest = None
    asleep = False
    for v in vehicles:
        if v.get("state") == "asleep":
            asleep = True
            continue
        if not site.has_location:
            # no site position to compare with, take the first awake car
            selected = v
            break
        try:
            drive = vehicle.drive_state(v["id"])
        except (requests.RequestException, TransientUnavailable) as e:
            # dozed off since the vehicle list was read
            log.info("Drive state for %s not available: %s", v["id"], e)
            asleep = True
            continue
        if drive.get("latitude") is None or drive.get("longitude") is None:
            continue
        d = distance_m(drive["latitude"], drive["longitude"], site.latitude, site.longitude)
        if d < settings.site_radius_m:
            if drive.get("speed"):
                click.echo(f"Vehicle is moving at speed {drive['speed']}")
                return False
            selected = v
            break
        if closest is None or d < closest:
            closest = int(d)

    if selected is None:
        if asleep and closest is None:
            click.echo("No Tesla vehicles found awake.")
        else:
            click.echo(f"No Tesla vehicles found within {settings.site_radius_m:.0f}m of {site.address}. "
                       f"Closest is {closest}m")
        return False

    click.echo(f"Tesla vehicle found: {selected.get('display_name')} and is {selected.get('state')}")
    vehicle.bind(selected["id"])
    return True


# ----- CLI -----
@click.group()
@click.option('--config', '-c', default='config.yaml', help='Path to config file')
@click.pass_context
def cli(ctx, config):
    try:
        settings = load_settings(config)
    except (OSError, ConfigError) as e:
        raise click.ClickException(str(e))
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
    )
    ctx.obj = settings


@cli.command()
@click.argument('curve', required=False)
@click.pass_context
def charge(ctx, curve):
    """Charge the vehicle with excess solar."""
    settings = ctx.obj
    charge_curve = settings.curve(curve)
    if charge_curve is None:
        raise click.ClickException(f"Charge curve {curve} not found")

    click.echo('Charging Tesla from Solar')
    vehicle, telemetry = build_clients(settings)
    if not prepare_session(vehicle, telemetry, settings):
        return

    loop = start_session(vehicle, telemetry, settings, charge_curve)
    click.echo('Press Ctrl+C to stop monitoring')
    try:
        while loop.is_active:
            time.sleep(0.5)
    except KeyboardInterrupt:
        pass
    finally:
        loop.cancel()
        loop.join()
    click.echo('Charge monitoring has stopped')


@cli.command()
@click.argument('hours', type=click.FloatRange(min=0, min_open=True))
@click.argument('percentage', type=click.IntRange(1, 100))
@click.pass_context
def trip(ctx, hours, percentage):
    """Charge the vehicle for a trip HOURS from now needing PERCENTAGE SOC."""
    settings = ctx.obj
    vehicle, telemetry = build_clients(settings)
    runner = TripRunner(vehicle, telemetry, settings)
    try:
        runner.planner.plan(hours, percentage)
    except ConfigError as e:
        raise click.ClickException(str(e))
    if not prepare_session(vehicle, telemetry, settings):
        return

    click.echo('Press Ctrl+C to stop monitoring')
    try:
        runner.run(hours, percentage)
    except KeyboardInterrupt:
        pass


@cli.command()
@click.argument('percentage', type=click.IntRange(50, 100))
@click.option('--vehicle-id', default=None, help='Vehicle id; defaults to the first on the account')
@click.pass_context
def limit(ctx, percentage, vehicle_id):
    """Set the charge limit to PERCENTAGE."""
    vehicle, _ = build_clients(ctx.obj)
    try:
        if vehicle_id is None:
            vehicles = vehicle.vehicles()
            if not vehicles:
                raise click.ClickException("No Tesla vehicles found")
            vehicle_id = vehicles[0]["id"]
        vehicle.bind(vehicle_id)
        vehicle.set_charge_limit(percentage)
    except (CommandRejected, TransientUnavailable, requests.RequestException) as e:
        raise click.ClickException(str(e))
    click.echo(f"Charge limit set to {percentage}")


@cli.command()
@click.option('--interval', default=20, show_default=True, help='Seconds between readings')
@click.pass_context
def monitor(ctx, interval):
    """Print site power readings without touching the car."""
    _, telemetry = build_clients(ctx.obj)
    click.echo('Starting measurement loop...')

    next_tick = time.monotonic()
    try:
        while True:
            try:
                reading = telemetry.get_telemetry()
                click.echo(f"{datetime.now():%Y-%m-%dT%H:%M:%S} Solar:{reading.solar_kw:.2f} "
                           f"Home:{reading.load_kw:.2f} Grid:{reading.grid_kw:.2f}")
            except requests.RequestException as e:
                log.warning("Reading failed: %s", e)
            next_tick += interval
            time.sleep(max(0, next_tick - time.monotonic()))
    except KeyboardInterrupt:
        click.echo('Exiting on Ctrl+C')


if __name__ == '__main__':
    cli()
