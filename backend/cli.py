"""Command-line entry point for the hive orchestrator."""

import json
import os
import signal
import sys
import threading
import time
import logging

import click
import requests
import uvicorn

from backend.config import API_HOST, API_URL, DRY_RUN, LOG_FILE, PID_FILE
from backend.main import create_app
from orchestration.orchestrator import Orchestrator
from scaling.exceptions import AutoscalerError

# Set by the signal handlers: "graceful" on SIGINT, "emergency" on SIGTERM
shutdown_requested = None


def configure_logging():
    os.makedirs(os.path.dirname(LOG_FILE) or ".", exist_ok=True)
    logging.basicConfig(
        filename=LOG_FILE,
        level=logging.INFO,
        format="%(asctime)s | %(levelname)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S"
    )


def signal_handler(sig, frame):
    """Handle shutdown signals: SIGINT stops gracefully, SIGTERM stops immediately."""
    global shutdown_requested
    shutdown_requested = "emergency" if sig == signal.SIGTERM else "graceful"
    logging.info(f"Shutdown signal received ({shutdown_requested})")


def write_pid_file():
    os.makedirs(os.path.dirname(PID_FILE) or ".", exist_ok=True)
    with open(PID_FILE, "w") as f:
        f.write(str(os.getpid()))


def remove_pid_file():
    try:
        os.remove(PID_FILE)
    except FileNotFoundError:
        pass


def read_pid_file():
    try:
        with open(PID_FILE, "r") as f:
            return int(f.read().strip())
    except (OSError, ValueError):
        return None


def start_api_server(orchestrator, host, port):
    server = uvicorn.Server(uvicorn.Config(create_app(orchestrator), host=host, port=port, log_level="info"))
    thread = threading.Thread(target=server.run, name="admin-api", daemon=True)
    thread.start()
    logging.info(f"Admin API listening on {host}:{port}")
    return server


def initialize_or_exit(orchestrator):
    try:
        return orchestrator.initialize()
    except AutoscalerError as e:
        logging.error(f"Fatal error: {e}")
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)


def run_until_signalled(orchestrator, server=None):
    """Main daemon loop: wait for a signal, then shut the orchestrator down."""
    global shutdown_requested
    shutdown_requested = None
    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)
    write_pid_file()

    click.echo("\nPress Ctrl+C to stop\n")
    try:
        while shutdown_requested is None:
            time.sleep(1)
    except KeyboardInterrupt:
        shutdown_requested = "graceful"
    finally:
        if server is not None:
            server.should_exit = True
        if shutdown_requested == "emergency":
            orchestrator.emergency_shutdown()
        else:
            orchestrator.stop()
        remove_pid_file()

    click.echo("\nHive orchestrator stopped")


@click.group()
def main():
    """Hive orchestrator -- autoscaling and supervision for managed services."""
    configure_logging()


@main.command()
@click.option("--api-port", default=None, type=int, help="Serve the admin API on this port.")
@click.option("--api-host", default=API_HOST, show_default=True, help="Interface for the admin API.")
def init(api_port, api_host):
    """Initialize every subsystem and run until interrupted."""
    orchestrator = Orchestrator()
    status = initialize_or_exit(orchestrator)

    click.echo("Hive orchestrator started")
    click.echo(f"   Systems: {', '.join(f'{k}={v}' for k, v in status['systems'].items())}")
    click.echo(f"   Dry run: {DRY_RUN}")
    click.echo(f"   Log file: {LOG_FILE}")
    if DRY_RUN:
        click.echo("   DRY RUN MODE - no actual scaling performed")

    server = start_api_server(orchestrator, api_host, api_port) if api_port else None
    run_until_signalled(orchestrator, server)


@main.command()
@click.option("--api-port", default=None, type=int, help="Serve the admin API on this port.")
@click.option("--api-host", default=API_HOST, show_default=True, help="Interface for the admin API.")
def deploy(api_port, api_host):
    """Initialize, deploy every managed service, then keep running."""
    orchestrator = Orchestrator()
    initialize_or_exit(orchestrator)
    try:
        result = orchestrator.deploy()
    except AutoscalerError as e:
        click.echo(f"Deployment failed: {e}", err=True)
        orchestrator.stop()
        sys.exit(1)

    click.echo(json.dumps(result, indent=2, default=str))
    server = start_api_server(orchestrator, api_host, api_port) if api_port else None
    run_until_signalled(orchestrator, server)


def call_admin_api(method, url, path):
    try:
        response = requests.request(method, f"{url.rstrip('/')}{path}", timeout=10)
        response.raise_for_status()
    except requests.exceptions.ConnectionError:
        click.echo(f"Error: cannot connect to the admin API at {url}. Is the orchestrator running with --api-port?",
                   err=True)
        sys.exit(1)
    except requests.exceptions.RequestException as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    return response.json()


@main.command()
@click.option("--url", default=API_URL, show_default=True, help="Admin API of the running orchestrator.")
def status(url):
    """Print the status of a running orchestrator as JSON."""
    click.echo(json.dumps(call_admin_api("GET", url, "/status"), indent=2))


@main.command()
@click.option("--url", default=API_URL, show_default=True, help="Admin API of the running orchestrator.")
def recover(url):
    """Retry every failed subsystem of a running orchestrator."""
    result = call_admin_api("POST", url, "/recovery")
    for name, ok in result.get("recovered", {}).items():
        click.echo(f"{name}: {'recovered' if ok else 'still failed'}")
    if not result.get("recovered"):
        click.echo("No failed subsystems")


def _signal_running(sig, label):
    pid = read_pid_file()
    if pid is None:
        click.echo("Error: no running orchestrator found", err=True)
        sys.exit(1)
    try:
        os.kill(pid, sig)
    except ProcessLookupError:
        remove_pid_file()
        click.echo(f"Error: orchestrator process {pid} is not running", err=True)
        sys.exit(1)
    click.echo(f"{label} requested for orchestrator process {pid}")


@main.command()
def stop():
    """Gracefully stop the running orchestrator."""
    _signal_running(signal.SIGINT, "Graceful shutdown")


@main.command()
def emergency():
    """Stop the running orchestrator immediately, without waiting for subsystems."""
    _signal_running(signal.SIGTERM, "Emergency shutdown")


if __name__ == "__main__":
    main()
