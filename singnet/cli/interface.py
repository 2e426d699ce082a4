"""
Command-line interface for singnet
"""

import argparse
import sys
import time
from typing import Optional, List, Dict

from rich.console import Console
from rich.table import Table
from rich.panel import Panel
from rich.progress import (
    Progress, SpinnerColumn, TextColumn
)
from rich import box

from .. import __version__
from ..api.client import LocalAPIClient, ServiceError, ServiceNotRunning
from ..core.errors import VPNManagerError

console = Console()

DEFAULT_API = 'http://127.0.0.1:8787'


class VPNCLI:
    """Command-line client for a running singnet service"""

    def __init__(self, client: Optional[LocalAPIClient] = None):
        self.client = client or LocalAPIClient()

    def connect(self, config_id: Optional[str] = None,
                server: Optional[str] = None):
        """Connect and show the resulting status"""
        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            transient=True,
        ) as progress:
            task = progress.add_task("Connecting...", total=None)
            status = self.client.connect(config_id, server)
            progress.update(task, completed=1)

        console.print(f"[green]✓ Connected via {status['server']}[/green]")
        self._print_status(status)

    def disconnect(self):
        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            transient=True,
        ) as progress:
            task = progress.add_task("Disconnecting...", total=None)
            self.client.disconnect()
            progress.update(task, completed=1)

        console.print("[green]✓ Disconnected[/green]")

    def status(self):
        self._print_status(self.client.status())

    def _print_status(self, status: Dict):
        table = Table(title="VPN Status", box=box.ROUNDED)
        table.add_column("Metric", style="cyan")
        table.add_column("Value", style="white")

        table.add_row("State", status['state'])
        table.add_row("Connected", "✓" if status['connected'] else "✗")

        if status['connected']:
            table.add_row("Config", status['active_config_id'] or '')
            table.add_row("Server", status['server'] or '')
            table.add_row("Uptime", self._format_duration(status['uptime']))
            table.add_row(
                "Speed",
                f"↓ {self._human_bytes(status['download_speed'])}/s  "
                f"↑ {self._human_bytes(status['upload_speed'])}/s"
            )
            table.add_row(
                "Session",
                f"↓ {self._human_bytes(status['total_download'])}  "
                f"↑ {self._human_bytes(status['total_upload'])}"
            )

        table.add_row(
            "Lifetime",
            f"↓ {self._human_bytes(status['lifetime_download'])}  "
            f"↑ {self._human_bytes(status['lifetime_upload'])}"
        )
        if status.get('last_error'):
            table.add_row("Last error", f"[red]{status['last_error']}[/red]")

        console.print(table)

    def list_configs(self):
        configs = self.client.configs()
        if not configs:
            console.print("[yellow]No connectable configs, add a subscription first[/yellow]")
            return

        table = Table(title="Configs", box=box.ROUNDED)
        table.add_column("ID", style="cyan")
        table.add_column("Name", style="green")
        table.add_column("Server", style="white")
        table.add_column("Servers", style="magenta")

        for config in configs:
            table.add_row(config['id'], config['name'], config['server'] or '',
                          str(config['server_count']))
        console.print(table)

    def list_servers(self, config_id: str):
        servers = self.client.servers(config_id)
        if not servers:
            console.print("[yellow]No servers found[/yellow]")
            return

        table = Table(title="Servers", box=box.ROUNDED)
        table.add_column("#", style="cyan")
        table.add_column("Label", style="white")
        for i, label in enumerate(servers, 1):
            table.add_row(str(i), label)
        console.print(table)

    def list_subscriptions(self):
        subscriptions = self.client.subscriptions()
        if not subscriptions:
            console.print("[yellow]No subscriptions[/yellow]")
            return

        table = Table(title="Subscriptions", box=box.ROUNDED)
        table.add_column("ID", style="cyan")
        table.add_column("Name", style="green")
        table.add_column("Servers", style="magenta")
        table.add_column("Updated", style="white")
        table.add_column("Expires", style="white")
        table.add_column("Error", style="red")

        for sub in subscriptions:
            table.add_row(
                sub['id'],
                sub['name'],
                str(sub['server_count']),
                self._format_timestamp(sub.get('updated_at')),
                self._format_timestamp(sub.get('expires_at')),
                sub.get('last_error') or ''
            )
        console.print(table)

    def add_subscription(self, name: str, url: str):
        sub = self.client.add_subscription(name, url)
        console.print(
            f"[green]✓ Added {sub['name']} ({sub['id']}) "
            f"with {sub['server_count']} servers[/green]"
        )
        if sub.get('last_error'):
            console.print(f"[yellow]Initial sync failed: {sub['last_error']}[/yellow]")

    def refresh_subscriptions(self, subscription_id: Optional[str] = None):
        if subscription_id:
            sub = self.client.refresh_subscription(subscription_id)
            console.print(
                f"[green]✓ {sub['name']}: {sub['server_count']} servers[/green]"
            )
            return

        results = self.client.refresh_all()
        for sub_id, error in results.items():
            if error:
                console.print(f"[red]✗ {sub_id}: {error}[/red]")
            else:
                console.print(f"[green]✓ {sub_id}[/green]")

    def delete_subscription(self, subscription_id: str):
        sub = self.client.delete_subscription(subscription_id)
        console.print(f"[green]✓ Deleted {sub['name']}[/green]")

    def show_logs(self, tail: Optional[int] = None):
        lines = self.client.logs()
        if tail:
            lines = lines[-tail:]
        for line in lines:
            console.print(line, markup=False, highlight=False)

    def show_settings(self, settings: Optional[Dict] = None):
        settings = settings if settings is not None else self.client.settings()
        table = Table(title="Settings", box=box.SIMPLE)
        table.add_column("Key", style="cyan")
        table.add_column("Value", style="white")
        for key, value in settings.items():
            table.add_row(key, value or '[dim]-[/dim]')
        console.print(table)

    def set_settings(self, assignments: List[str]):
        partial = {}
        for item in assignments:
            if '=' not in item:
                raise ServiceError(f"Expected KEY=VALUE, got {item!r}")
            key, value = item.split('=', 1)
            partial[key.strip()] = value
        self.show_settings(self.client.update_settings(partial))

    def reset_settings(self):
        self.show_settings(self.client.reset_settings())

    def engine_status(self):
        status = self.client.engine_status()
        if status['installed']:
            console.print(Panel.fit(
                f"[bold]Path:[/bold] {status['path']}\n"
                f"[bold]Version:[/bold] {status.get('version') or 'unknown'}",
                title="sing-box",
                border_style="green"
            ))
        else:
            console.print("[yellow]sing-box is not installed[/yellow]")

    def install_engine(self):
        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            transient=True,
        ) as progress:
            task = progress.add_task("Installing sing-box...", total=None)
            self.client.install_engine()
            progress.update(task, completed=1)
        self.engine_status()

    def check_sites(self, name: Optional[str] = None):
        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            transient=True,
        ) as progress:
            task = progress.add_task("Checking sites...", total=None)
            results = self.client.check_sites(name)
            progress.update(task, completed=1)

        table = Table(title="Site Availability", box=box.SIMPLE)
        table.add_column("Site", style="cyan")
        table.add_column("Status", style="white")
        table.add_column("Latency", style="magenta")
        table.add_column("Detail", style="white")

        for result in results:
            latency = result.get('latency_ms')
            table.add_row(
                result['name'],
                "[green]✓ OK[/green]" if result['ok'] else "[red]✗ Blocked[/red]",
                f"{latency} ms" if latency is not None else "N/A",
                result.get('error') or ''
            )
        console.print(table)

    def _format_duration(self, seconds: float) -> str:
        """Format duration in seconds to human readable"""
        if seconds < 60:
            return f"{seconds:.0f}s"
        elif seconds < 3600:
            minutes = seconds // 60
            seconds %= 60
            return f"{minutes:.0f}m {seconds:.0f}s"
        else:
            hours = seconds // 3600
            minutes = (seconds % 3600) // 60
            return f"{hours:.0f}h {minutes:.0f}m"

    def _human_bytes(self, bytes_count: float) -> str:
        """Convert bytes to human readable format"""
        for unit in ['B', 'KB', 'MB', 'GB', 'TB']:
            if bytes_count < 1024.0:
                return f"{bytes_count:.2f} {unit}"
            bytes_count /= 1024.0
        return f"{bytes_count:.2f} PB"

    @staticmethod
    def _format_timestamp(value: Optional[float]) -> str:
        if not value:
            return '-'
        return time.strftime('%Y-%m-%d %H:%M', time.localtime(value))


def _split_addr(addr: str):
    host, _, port = addr.rpartition(':')
    if not host or not port.isdigit():
        raise argparse.ArgumentTypeError(f"Expected HOST:PORT, got {addr!r}")
    return host, int(port)


def serve(args) -> int:
    """Run the service with its local API until interrupted"""
    import uvicorn

    from ..api.control import build_channel
    from ..api.http_api import create_app
    from ..core.config_manager import ConfigManager
    from ..core.service import VPNService
    from ..utils.logging_setup import (
        setup_console_logging, setup_file_logging, set_logging_level
    )

    overrides = {
        'mode': args.mode,
        'hub.address': args.hub_addr,
        'hub.module_id': args.module_id,
        'hub.version': args.module_version,
        'logging.level': args.log_level,
    }
    if args.http_addr:
        host, port = args.http_addr
        overrides['http.host'] = host
        overrides['http.port'] = port

    config = ConfigManager(data_dir=args.data_dir, overrides=overrides)

    setup_console_logging()
    if config.get('logging.file'):
        setup_file_logging(config.get('logging.file'))
    set_logging_level(config.get('logging.level', 'INFO'))

    service = VPNService(config)
    service.start(build_channel(config, service))
    try:
        uvicorn.run(
            create_app(service),
            host=config.get('http.host'),
            port=int(config.get('http.port')),
            log_level=str(config.get('logging.level', 'INFO')).lower(),
        )
    finally:
        service.shutdown()
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='singnet',
        description='sing-box VPN manager',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s serve --mode module --hub-addr hub.local:8080
  %(prog)s subs add work https://example.com/sub
  %(prog)s connect --config ID --server "DE 1"
  %(prog)s status
        """
    )
    parser.add_argument('--version', action='version',
                        version=f'%(prog)s {__version__}')
    parser.add_argument('--api', default=DEFAULT_API,
                        help='Local API address (default: %(default)s)')

    subparsers = parser.add_subparsers(dest='command', help='Command to execute')

    serve_parser = subparsers.add_parser('serve', help='Run the service')
    serve_parser.add_argument('--mode', choices=['standalone', 'module'])
    serve_parser.add_argument('--hub-addr', help='Hub address (module mode)')
    serve_parser.add_argument('--module-id', help='Module id announced to the hub')
    serve_parser.add_argument('--module-version', help='Module version announced to the hub')
    serve_parser.add_argument('--http-addr', type=_split_addr,
                              help='Local API HOST:PORT')
    serve_parser.add_argument('--data-dir', help='Configuration and state directory')
    serve_parser.add_argument(
        '--log-level',
        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'],
        help='Set logging level'
    )

    subparsers.add_parser('status', help='Show connection status')

    connect_parser = subparsers.add_parser('connect', help='Connect to a server')
    connect_parser.add_argument('--config', help='Config id (default from settings)')
    connect_parser.add_argument('--server', help='Server label')

    subparsers.add_parser('disconnect', help='Disconnect')
    subparsers.add_parser('configs', help='List connectable configs')

    servers_parser = subparsers.add_parser('servers', help='List servers of a config')
    servers_parser.add_argument('config_id')

    subs_parser = subparsers.add_parser('subs', help='Manage subscriptions')
    subs_sub = subs_parser.add_subparsers(dest='subs_command')
    subs_sub.add_parser('list', help='List subscriptions')
    subs_add = subs_sub.add_parser('add', help='Add a subscription')
    subs_add.add_argument('name')
    subs_add.add_argument('url')
    subs_refresh = subs_sub.add_parser('refresh', help='Refresh one or all subscriptions')
    subs_refresh.add_argument('id', nargs='?')
    subs_delete = subs_sub.add_parser('delete', help='Delete a subscription')
    subs_delete.add_argument('id')

    logs_parser = subparsers.add_parser('logs', help='Show engine output')
    logs_parser.add_argument('--tail', type=int, help='Only the last N lines')

    settings_parser = subparsers.add_parser('settings', help='Show or change settings')
    settings_sub = settings_parser.add_subparsers(dest='settings_command')
    settings_sub.add_parser('show', help='Show settings')
    settings_set = settings_sub.add_parser('set', help='Update settings')
    settings_set.add_argument('assignments', nargs='+', metavar='KEY=VALUE')
    settings_sub.add_parser('reset', help='Restore defaults')

    engine_parser = subparsers.add_parser('engine', help='sing-box binary')
    engine_sub = engine_parser.add_subparsers(dest='engine_command')
    engine_sub.add_parser('status', help='Show install status')
    engine_sub.add_parser('install', help='Download and install sing-box')

    check_parser = subparsers.add_parser('check', help='Check site availability')
    check_parser.add_argument('--name', help='Only this site')

    return parser


def run_command(cli: VPNCLI, args) -> int:
    command = args.command
    if command == 'status':
        cli.status()
    elif command == 'connect':
        cli.connect(args.config, args.server)
    elif command == 'disconnect':
        cli.disconnect()
    elif command == 'configs':
        cli.list_configs()
    elif command == 'servers':
        cli.list_servers(args.config_id)
    elif command == 'subs':
        sub = args.subs_command or 'list'
        if sub == 'list':
            cli.list_subscriptions()
        elif sub == 'add':
            cli.add_subscription(args.name, args.url)
        elif sub == 'refresh':
            cli.refresh_subscriptions(args.id)
        elif sub == 'delete':
            cli.delete_subscription(args.id)
    elif command == 'logs':
        cli.show_logs(args.tail)
    elif command == 'settings':
        sub = args.settings_command or 'show'
        if sub == 'show':
            cli.show_settings()
        elif sub == 'set':
            cli.set_settings(args.assignments)
        elif sub == 'reset':
            cli.reset_settings()
    elif command == 'engine':
        if args.engine_command == 'install':
            cli.install_engine()
        else:
            cli.engine_status()
    elif command == 'check':
        cli.check_sites(args.name)
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for CLI interface"""
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    try:
        if args.command == 'serve':
            return serve(args)
        return run_command(VPNCLI(LocalAPIClient(args.api)), args)
    except ServiceNotRunning as e:
        console.print(f"[yellow]{e.message}[/yellow]")
        return 2
    except ServiceError as e:
        console.print(f"[red]✗ {e.message}[/red]")
        return 1
    except VPNManagerError as e:
        console.print(f"[red]✗ {e.message}[/red]")
        return 1
    except KeyboardInterrupt:
        console.print("\nOperation cancelled by user")
        return 130


if __name__ == '__main__':
    sys.exit(main())
