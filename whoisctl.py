import sys

import click
from tabulate import tabulate

from obmp_whois.client import parse_records, send_whois_query


def send_command(ctx: click.Context, line: str) -> str:
    try:
        return send_whois_query(ctx.obj["host"], ctx.obj["port"], line)
    except OSError as e:
        click.echo(f"Error: cannot query {ctx.obj['host']}:{ctx.obj['port']}: {e}", err=True)
        sys.exit(1)


@click.group()
@click.option("--host", "-h", default="localhost", help="Whois daemon host")
@click.option("--port", "-p", default=43, type=int, help="Whois daemon port")
@click.pass_context
def cli(ctx, host, port):
    """OpenBMP whois query CLI"""
    ctx.ensure_object(dict)
    ctx.obj["host"] = host
    ctx.obj["port"] = port


@cli.command()
@click.argument("prefix")
@click.argument("peer", required=False)
@click.option("--table", is_flag=True, help="Render each record as a table")
@click.pass_context
def query(ctx, prefix, peer, table):
    """Lookup an IPv4/IPv6 address or network, optionally scoped to peers"""
    line = f"{prefix} {peer}" if peer else prefix
    response = send_command(ctx, line)

    records = parse_records(response) if table and not response.startswith("%") else []
    if not records:
        click.echo(response, nl=False)
        return

    for record in records:
        print(tabulate(list(record.items()), headers=["Field", "Value"], tablefmt="grid"))
        print()


@cli.command(name="help")
@click.pass_context
def help_cmd(ctx):
    """Show the server usage text"""
    click.echo(send_command(ctx, "help"), nl=False)


if __name__ == "__main__":
    cli()
