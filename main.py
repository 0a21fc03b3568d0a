import json
import logging

import click
from sqlalchemy import inspect, text

import config
from services import db
from services.activity_log import ACTIVITY_TYPES, export_activity_json
from services.history_export import export_history_json, get_node_history
from services.node_export import export_nodes_json
from services.node_sync import build_scheduler, build_sync_service
from services.region_history import RegionHistoryCache, RegionHistoryService

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

TABLE_DESCRIPTIONS = {
    'nodes': 'Node registry (one row per identity key or address)',
    'network_history': 'Network snapshots, one row per time bucket',
    'region_history': 'Per-country snapshots, one row per bucket and country',
    'activity_log': 'Node events detected during reconciliation',
}


@click.group()
def cli():
    """Storage node registry CLI entrypoint."""
    db.configure_db()


@cli.command(name="init_db")
def init_db():
    """Initialize the database (create tables)."""
    db.init_db()
    click.echo("Database initialized.")


@cli.command(name="sync_once")
def sync_once():
    """Run a single refresh cycle: gossip fetch, reconciliation and snapshot."""
    db.init_db()
    stats = build_sync_service(db.SessionLocal).run_cycle()
    click.echo(json.dumps(stats, indent=2))


@cli.command(name="run_scheduler")
def run_scheduler():
    """Run refresh cycles on the configured interval until interrupted."""
    db.init_db()
    scheduler = build_scheduler(build_sync_service(db.SessionLocal))
    scheduler.start()
    click.echo(f"Scheduler running every {config.REFRESH_INTERVAL_SECONDS}s. Press Ctrl+C to stop.")
    try:
        scheduler.wait()
    except KeyboardInterrupt:
        pass
    finally:
        scheduler.stop()


@cli.command(name="export_nodes")
@click.option('--out', default=None, help='File to save JSON (optional)')
def export_nodes(out):
    """Export the node registry as JSON."""
    js = export_nodes_json(out_path=out)
    if out:
        click.echo(f"Nodes exported to {out}")
    else:
        click.echo(js)


@cli.command(name="export_history")
@click.option('--out', default=None, help='File to save JSON (optional)')
@click.option('--start', default=None, type=click.DateTime(), help='Start time (UTC)')
@click.option('--end', default=None, type=click.DateTime(), help='End time (UTC)')
@click.option('--limit', default=1000, help='Maximum number of snapshots (default 1000)')
def export_history(out, start, end, limit):
    """Export network snapshots as JSON."""
    js = export_history_json(out_path=out, start=start, end=end, limit=limit)
    if out:
        click.echo(f"History exported to {out}")
    else:
        click.echo(js)


@cli.command(name="export_activity")
@click.option('--out', default=None, help='File to save JSON (optional)')
@click.option('--node', default=None, help='Node key or identity key')
@click.option('--type', 'activity_type', default=None, type=click.Choice(ACTIVITY_TYPES), help='Event type')
@click.option('--limit', default=50, help='Maximum number of events (default 50)')
def export_activity(out, node, activity_type, limit):
    """Export recent node activity, newest first."""
    js = export_activity_json(out_path=out, node_key=node, activity_type=activity_type, limit=limit)
    if out:
        click.echo(f"Activity exported to {out}")
    else:
        click.echo(js)


@cli.command(name="export_region_history")
@click.argument('country')
@click.option('--country-code', default=None, help='ISO country code matched as an alternative')
@click.option('--start', default=None, type=click.DateTime(), help='Start time (UTC)')
@click.option('--end', default=None, type=click.DateTime(), help='End time (UTC)')
@click.option('--credits', 'with_credits', is_flag=True, help='Also print credits earned per node')
def export_region_history(country, country_code, start, end, with_credits):
    """Export per-country snapshots as JSON."""
    service = RegionHistoryService(db.SessionLocal, RegionHistoryCache())
    data = service.get_region_history(country, country_code, start, end)
    output = {'country': country, 'snapshots': data}
    if with_credits:
        output['credits_earned'] = service.get_credits_earned(country, country_code, start, end)
    click.echo(json.dumps(output, ensure_ascii=False, indent=2))


@cli.command(name="node_history")
@click.argument('identity_key')
@click.option('--start', default=None, type=click.DateTime(), help='Start time (UTC)')
@click.option('--end', default=None, type=click.DateTime(), help='End time (UTC)')
def node_history(identity_key, start, end):
    """Print one node's metric time series."""
    session = db.SessionLocal()
    try:
        points = get_node_history(session, identity_key, start, end)
    finally:
        session.close()
    if not points:
        click.echo(f"No history found for {identity_key}.")
        return
    click.echo(json.dumps(points, ensure_ascii=False, indent=2, default=str))


@cli.command(name="show_table")
@click.argument('table')
def show_table(table):
    """
    Show first 10 records from a table.

    Available tables: nodes, network_history, region_history

    Examples:
      python main.py show_table nodes
      python main.py show_table network_history
    """
    if table not in TABLE_DESCRIPTIONS or not inspect(db.engine).has_table(table):
        click.echo(f"Error: Table '{table}' does not exist.\n", err=True)
        click.echo("Available tables:")
        for name, desc in TABLE_DESCRIPTIONS.items():
            click.echo(f"  {name:20} - {desc}")
        click.echo("\nExample: python main.py show_table nodes")
        return

    with db.engine.connect() as conn:
        result = conn.execute(text(f"SELECT * FROM {table} LIMIT 10"))
        rows = result.fetchall()
        if not rows:
            click.echo(f"No records found in table '{table}'.")
            return
        columns = list(result.keys())
        click.echo(f"Columns: {columns}")
        click.echo(f"Showing first 10 records from '{table}':")
        for row in rows:
            click.echo(str(dict(zip(columns, row))))


@cli.command(name="serve_api")
@click.option('--host', default=config.API_HOST, help='Bind address')
@click.option('--port', default=config.API_PORT, help='Bind port')
@click.option('--with-scheduler', is_flag=True, help='Also run refresh cycles in this process')
def serve_api(host, port, with_scheduler):
    """Serve the read API with uvicorn."""
    import uvicorn
    import api_main

    db.init_db()
    if with_scheduler:
        api_main.attach_scheduler(build_scheduler(build_sync_service(db.SessionLocal, api_main.region_cache)))
    uvicorn.run(api_main.app, host=host, port=port)


if __name__ == "__main__":
    cli()
