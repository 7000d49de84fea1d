"""
Click CLI for Ben OS

Entry point for running the REST API together with the MCP server, plus
administrative commands for workspace import, agent keys, reports and
activity retention.

Server modes:
- stdio: API on HTTP, MCP over stdin/stdout in the same event loop
- sse/http: API and MCP on neighbouring ports, run concurrently
- none: API only
"""

import asyncio
import json
import logging
import socket
import sys
from typing import Any, Dict, List, Optional

import click
import uvicorn
import yaml

from . import api
from .activity import ActivityLogger, MIN_RETENTION_DAYS, MAX_RETENTION_DAYS
from .auth import ADMIN_CAPABILITIES, AgentAuthService, AgentNotFoundError
from .database import AGENT_TYPES, REPORT_TYPES, BenOSDatabase
from .importer import import_workspace
from .mcp_server import create_mcp_server
from .reports import ReportGenerator, parse_date

logger = logging.getLogger(__name__)

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 8000
PORT_SCAN_RANGE = 100

# Database shared by the API and the MCP server for the lifetime of a command
_database_instance: Optional[BenOSDatabase] = None


class PortConflictError(Exception):
    """Raised when no usable ports can be found."""


def check_port_available(host: str, port: int) -> bool:
    """
    Check whether a TCP port can be bound on the host.

    Returns:
        True when the bind succeeds, False when the port is taken
    """
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        try:
            sock.bind((host, port))
            return True
        except OSError:
            return False


def find_available_ports(start_port: int, count: int = 2, host: str = DEFAULT_HOST) -> List[int]:
    """
    Find `count` consecutive free ports at or above start_port.

    Raises:
        PortConflictError: If none are found within PORT_SCAN_RANGE ports
    """
    for base in range(start_port, start_port + PORT_SCAN_RANGE):
        candidates = list(range(base, base + count))
        if all(check_port_available(host, p) for p in candidates):
            return candidates
    raise PortConflictError(
        f"No {count} consecutive free ports between {start_port} and {start_port + PORT_SCAN_RANGE}"
    )


def validate_workspace_yaml(path: str) -> Dict[str, Any]:
    """
    Load a workspace YAML file and check that it holds a mapping.

    Raises:
        click.ClickException: For missing files, parse errors or non-mapping content
    """
    try:
        with open(path, 'r', encoding='utf-8') as f:
            data = yaml.safe_load(f)
    except FileNotFoundError:
        raise click.ClickException(f"Workspace file not found: {path}")
    except yaml.YAMLError as e:
        raise click.ClickException(f"Invalid YAML in {path}: {e}")

    if not isinstance(data, dict):
        raise click.ClickException(f"Workspace file {path} must contain a YAML dictionary")
    return data


def print_startup_banner(port: int, mcp_port: Optional[int], transport: str, host: str) -> None:
    """Print the service URLs. In stdio mode the banner goes to stderr."""
    to_stderr = transport == 'stdio'
    lines = [
        "=" * 60,
        "BEN OS STARTED",
        "=" * 60,
        f"REST API:   http://{host}:{port}/api/v1",
        f"Health:     http://{host}:{port}/healthz",
        f"WebSocket:  ws://{host}:{port}/ws/updates",
    ]
    if transport == 'stdio':
        lines.append("MCP server: stdin/stdout (stdio transport)")
    elif transport == 'sse':
        lines.append(f"MCP server: http://{host}:{mcp_port}/sse (SSE transport)")
    elif transport == 'http':
        lines.append(f"MCP server: http://{host}:{mcp_port}/mcp (HTTP transport)")
    else:
        lines.append("MCP server: disabled")
    lines.append("=" * 60)
    for line in lines:
        click.echo(line, err=to_stderr)


def _api_server(host: str, port: int) -> uvicorn.Server:
    # log_config=None keeps uvicorn on the root handlers, which write to stderr
    config = uvicorn.Config(api.app, host=host, port=port, log_config=None, log_level="info")
    return uvicorn.Server(config)


async def start_stdio_mode(port: int, host: str) -> None:
    """Serve the API in the background while MCP talks over stdin/stdout."""
    server = _api_server(host, port)
    print_startup_banner(port, None, 'stdio', host)

    mcp_server = create_mcp_server(_database_instance, api.connection_manager)
    api_task = asyncio.create_task(server.serve())
    try:
        await mcp_server.start_server(transport='stdio')
    finally:
        # The MCP client hung up; stop the API too
        server.should_exit = True
        await api_task


async def start_network_mode(port: int, mcp_port: int, host: str, transport: str) -> None:
    """Run the API and an SSE or HTTP MCP server concurrently."""
    server = _api_server(host, port)
    print_startup_banner(port, mcp_port, transport, host)

    mcp_server = create_mcp_server(_database_instance, api.connection_manager)
    await asyncio.gather(
        server.serve(),
        mcp_server.start_server(transport=transport, host=host, port=mcp_port),
    )


async def start_api_only_mode(port: int, host: str) -> None:
    server = _api_server(host, port)
    print_startup_banner(port, None, 'none', host)
    await server.serve()


def _open_database(db_path: Optional[str]) -> BenOSDatabase:
    global _database_instance
    path = db_path or api.settings.database_path
    try:
        _database_instance = BenOSDatabase(path)
    except Exception as e:
        click.echo(f"Failed to initialize database: {e}", err=True)
        sys.exit(1)
    logger.info(f"Database opened: {path}")
    return _database_instance


def cleanup_resources() -> None:
    """Close the shared database, if one is open."""
    global _database_instance
    if _database_instance is None:
        return
    try:
        _database_instance.close()
        logger.info("Database connection closed")
    except Exception as e:
        logger.error(f"Error closing database: {e}")
    finally:
        _database_instance = None


def _echo_json(data: Any) -> None:
    click.echo(json.dumps(data, indent=2, default=str))


@click.group()
@click.version_option("1.0.0", prog_name="ben-os")
def main():
    """Ben OS: project management API and MCP server for humans and AI agents."""


@main.command()
@click.option('--host', default=DEFAULT_HOST, show_default=True, help='Interface to bind')
@click.option('--port', default=DEFAULT_PORT, show_default=True, type=int, help='REST API port')
@click.option('--db-path', default=None, help='SQLite database file (defaults to DATABASE_PATH)')
@click.option('--mcp-transport', type=click.Choice(['stdio', 'sse', 'http', 'none']),
              default='sse', show_default=True, help='MCP transport mode')
@click.option('--mcp-port', default=None, type=int, help='MCP port for sse/http (defaults to port + 1)')
@click.option('--workspace', default=None, help='Workspace YAML to import before starting')
def serve(host, port, db_path, mcp_transport, mcp_port, workspace):
    """Start the REST API and, optionally, the MCP server."""
    needs_mcp_port = mcp_transport in ('sse', 'http')
    mcp_port = mcp_port or port + 1

    ports_free = check_port_available(host, port) and (
        not needs_mcp_port or check_port_available(host, mcp_port)
    )
    if not ports_free:
        try:
            ports = find_available_ports(port + 1, 2 if needs_mcp_port else 1, host)
        except PortConflictError as e:
            click.echo(f"Port conflict: {e}", err=True)
            sys.exit(1)
        click.echo(f"Port {port} is busy, using {ports[0]}", err=True)
        port = ports[0]
        if needs_mcp_port:
            mcp_port = ports[1]

    workspace_data = validate_workspace_yaml(workspace) if workspace else None

    database = _open_database(db_path)
    try:
        if workspace_data is not None:
            stats = import_workspace(database, workspace_data)
            click.echo(f"Imported workspace {workspace} ({len(stats['errors'])} errors)", err=True)

        api.db_instance = database
        if mcp_transport == 'stdio':
            asyncio.run(start_stdio_mode(port, host))
        elif needs_mcp_port:
            asyncio.run(start_network_mode(port, mcp_port, host, mcp_transport))
        else:
            asyncio.run(start_api_only_mode(port, host))
    except KeyboardInterrupt:
        logger.info("Shutdown requested")
    finally:
        api.db_instance = None
        cleanup_resources()


@main.command()
@click.option('--db-path', default=None, help='SQLite database file (defaults to DATABASE_PATH)')
def mcp(db_path):
    """Run only the MCP server over stdio."""
    database = _open_database(db_path)
    try:
        create_mcp_server(database, api.connection_manager).start_server_sync(transport='stdio')
    except KeyboardInterrupt:
        logger.info("Shutdown requested")
    finally:
        cleanup_resources()


@main.command(name='import')
@click.argument('workspace_file')
@click.option('--db-path', default=None, help='SQLite database file (defaults to DATABASE_PATH)')
def import_command(workspace_file, db_path):
    """Import areas, projects, milestones and tasks from a YAML file."""
    data = validate_workspace_yaml(workspace_file)
    database = _open_database(db_path)
    try:
        stats = import_workspace(database, data)
    except (ValueError, RuntimeError) as e:
        raise click.ClickException(str(e))
    finally:
        cleanup_resources()

    _echo_json(stats)
    if stats["errors"]:
        click.echo(f"{len(stats['errors'])} item(s) failed to import", err=True)


@main.group()
def agents():
    """Manage agent API keys."""


@agents.command(name='register')
@click.argument('name')
@click.option('--type', 'agent_type', type=click.Choice(AGENT_TYPES), default='task', show_default=True)
@click.option('--capability', 'capabilities', multiple=True, help='Capability to grant (repeatable)')
@click.option('--admin', is_flag=True, help='Grant every capability')
@click.option('--db-path', default=None)
def agents_register(name, agent_type, capabilities, admin, db_path):
    """Register an agent and print its API key."""
    if admin:
        capabilities = ADMIN_CAPABILITIES
    unknown = [c for c in capabilities if c not in ADMIN_CAPABILITIES]
    if unknown:
        raise click.ClickException(f"Invalid capability: {unknown[0]}")

    database = _open_database(db_path)
    try:
        agent, api_key = AgentAuthService(database).register_agent(
            name, agent_type, list(capabilities) if capabilities else None
        )
    finally:
        cleanup_resources()

    _echo_json(agent)
    click.echo(f"API key: {api_key}")
    click.echo("Store this key now; it cannot be shown again.", err=True)


@agents.command(name='list')
@click.option('--db-path', default=None)
def agents_list(db_path):
    """List registered agents."""
    database = _open_database(db_path)
    try:
        registered = AgentAuthService(database).list_agents()
    finally:
        cleanup_resources()

    if not registered:
        click.echo("No agents registered")
        return
    for agent in registered:
        state = "active" if agent.get("is_active") else "revoked"
        click.echo(f"{agent['id']}  {agent['name']:<24} {agent['type']:<8} {state}")


def _agent_action(method: str, agent_id: str, db_path: Optional[str]):
    database = _open_database(db_path)
    try:
        return getattr(AgentAuthService(database), method)(agent_id)
    except AgentNotFoundError as e:
        raise click.ClickException(str(e))
    finally:
        cleanup_resources()


@agents.command(name='rotate')
@click.argument('agent_id')
@click.option('--db-path', default=None)
def agents_rotate(agent_id, db_path):
    """Issue a new API key; the old one stops working."""
    _, api_key = _agent_action("rotate_api_key", agent_id, db_path)
    click.echo(f"API key: {api_key}")


@agents.command(name='revoke')
@click.argument('agent_id')
@click.option('--db-path', default=None)
def agents_revoke(agent_id, db_path):
    """Deactivate an agent."""
    agent = _agent_action("revoke_agent", agent_id, db_path)
    click.echo(f"Revoked agent {agent['id']} ({agent['name']})")


@agents.command(name='reactivate')
@click.argument('agent_id')
@click.option('--db-path', default=None)
def agents_reactivate(agent_id, db_path):
    """Reactivate a revoked agent."""
    agent = _agent_action("reactivate_agent", agent_id, db_path)
    click.echo(f"Reactivated agent {agent['id']} ({agent['name']})")


@main.command()
@click.option('--type', 'report_type', type=click.Choice(REPORT_TYPES), default='daily', show_default=True)
@click.option('--date', 'reference', default=None, help='Reference date YYYY-MM-DD (defaults to today)')
@click.option('--db-path', default=None)
def report(report_type, reference, db_path):
    """Generate and store a report, then print it."""
    try:
        reference_date = parse_date(reference) if reference else None
    except ValueError:
        raise click.ClickException("Invalid date. Use YYYY-MM-DD")

    database = _open_database(db_path)
    try:
        generated = ReportGenerator(database).create_report(report_type, reference=reference_date)
    finally:
        cleanup_resources()
    _echo_json(generated)


@main.command(name='cleanup-activity')
@click.option('--days', default=None, type=click.IntRange(MIN_RETENTION_DAYS, MAX_RETENTION_DAYS),
              help='Retention in days (defaults to BEN_OS_ACTIVITY_RETENTION_DAYS)')
@click.option('--db-path', default=None)
def cleanup_activity(days, db_path):
    """Delete activity log entries older than the retention period."""
    retention_days = days or api.settings.activity_retention_days
    database = _open_database(db_path)
    try:
        result = ActivityLogger(database).run_retention_cleanup(retention_days)
    finally:
        cleanup_resources()

    if not result["success"]:
        raise click.ClickException(result["error"])
    click.echo(f"Deleted {result['deleted_count']} activity entries older than {retention_days} days")


if __name__ == '__main__':
    main()
