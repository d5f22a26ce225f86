import asyncio
import logging
import os
import sys

import click
import yaml
from dotenv import load_dotenv
from pydantic import ValidationError

from obmp_whois.config import load_config
from obmp_whois.server import StartupError, WhoisServer
from obmp_whois.store import PrefixStore, StoreError
from obmp_whois.utils import configure_logging

# Postgres settings default from PG* environment variables
load_dotenv()


def env_int(name: str):
    value = os.getenv(name)
    return int(value) if value and value.isdigit() else None


@click.command()
@click.option("--config", "config_file", default=None, type=click.Path(dir_okay=False), help="YAML config file")
@click.option("--logfile", default=None, help="Log filename (default /var/log/whoisd.log)")
@click.option("--port", "-p", type=int, default=None, help="Listening port (default 43)")
@click.option("--threads", "-t", type=int, default=None, help="Max number of concurrently served connections")
@click.option("--pghost", default=lambda: os.getenv("PGHOST"), help="Postgres hostname, default is env PGHOST")
@click.option("--pgport", type=int, default=lambda: env_int("PGPORT"), help="Postgres port, default is env PGPORT")
@click.option("--pgdb", default=lambda: os.getenv("PGDATABASE"), help="Postgres database, default is env PGDATABASE")
@click.option("--pguser", default=lambda: os.getenv("PGUSER"), help="Postgres username, default is env PGUSER")
@click.option(
    "--pgpassword", default=lambda: os.getenv("PGPASSWORD"), help="Postgres password, default is env PGPASSWORD"
)
@click.option("--sslmode", default=None, help="Postgres sslmode (default require)")
@click.option("--exact-match", is_flag=True, help="Match ip/bits lookups exactly instead of by containment")
@click.option("--debug", is_flag=True, help="Debug logging to stdout")
def main(config_file, logfile, port, threads, pghost, pgport, pgdb, pguser, pgpassword, sslmode, exact_match, debug):
    """OpenBMP whois daemon"""
    overrides = {
        "server": {"port": port, "max_connections": threads, "exact_prefix_match": exact_match or None},
        "postgres": {
            "host": pghost,
            "port": pgport,
            "dbname": pgdb,
            "user": pguser,
            "password": pgpassword,
            "sslmode": sslmode,
        },
        "logging": {"logfile": logfile, "debug": debug or None},
    }

    try:
        config = load_config(config_file, overrides)
    except (OSError, ValueError, ValidationError, yaml.YAMLError) as e:
        raise click.UsageError(f"Invalid configuration: {e}")

    try:
        logger = configure_logging(config.logging.debug, config.logging.logfile)
    except OSError as e:
        click.echo(f"Failed to create log file '{config.logging.logfile}': {e}", err=True)
        sys.exit(1)

    try:
        store = PrefixStore.from_config(
            config.postgres, config.server.max_connections, config.server.exact_prefix_match
        )
    except StoreError as e:
        logger.error(str(e))
        sys.exit(1)

    server = WhoisServer(config, store)
    try:
        abandoned = asyncio.run(server.serve())
    except StartupError:
        store.close()
        sys.exit(1)

    if abandoned:
        # Queries stuck in executor threads would block interpreter exit
        logging.shutdown()
        os._exit(0)


if __name__ == "__main__":
    main()
