import click
import asyncio
import json
import secrets
from vmbox.core.metadata import UserRole
from vmbox.core.services import build_services
from vmbox.db.database import DatabaseManager, user_repository
from vmbox.config import settings
from vmbox.server import start as start_server

def run_with_services(fn):
    """Run fn(services) on a fresh component graph and dispose the engine after"""
    async def _run():
        services = build_services()
        try:
            return await fn(services)
        finally:
            await services.db.close()
    return asyncio.run(_run())

def run_with_db(fn):
    async def _run():
        manager = DatabaseManager()
        try:
            return await fn(manager)
        finally:
            await manager.close()
    return asyncio.run(_run())

def echo_json(data):
    click.echo(json.dumps(data, indent=2, default=str))

@click.group()
def cli():
    """VMBox CLI tools"""
    pass

@cli.group()
def db():
    """Database management commands"""
    pass

@cli.group()
def server():
    """Server management commands"""
    pass

@cli.group()
def runtime():
    """Docker runtime commands"""
    pass

@cli.group()
def vm():
    """VM administration commands"""
    pass

@cli.group()
def user():
    """User management commands"""
    pass

@cli.group()
def credits():
    """Credit management commands"""
    pass

@server.command()
@click.option('--host', default=None, help='Server host')
@click.option('--port', default=None, type=int, help='Server port')
@click.option('--workers', default=None, type=int, help='Number of workers')
@click.option('--reload/--no-reload', default=None, help='Enable auto-reload')
def start(host, port, workers, reload):
    """Start the API server"""
    if host:
        settings.HOST = host
    if port:
        settings.PORT = port
    if workers:
        settings.WORKERS = workers
    if reload is not None:
        settings.RELOAD = reload

    click.echo(f"Starting server on {settings.HOST}:{settings.PORT}")
    start_server()

@server.command('check')
def server_check():
    """Check server configuration"""
    click.echo("Server configuration:")
    click.echo(f"Host: {settings.HOST}")
    click.echo(f"Port: {settings.PORT}")
    click.echo(f"Workers: {settings.WORKERS}")
    click.echo(f"Reload: {settings.RELOAD}")
    click.echo(f"Port range: {settings.PORT_RANGE_START}-{settings.PORT_RANGE_END}")
    click.echo(f"Max VMs per user: {settings.MAX_VMS_PER_USER}")
    click.echo(f"Cost per hour: {settings.VM_COST_PER_HOUR}")
    click.echo(f"Metrics: {'Enabled' if settings.METRICS_ENABLED else 'Disabled'}")
    click.echo(f"Reconcile: {'Enabled' if settings.RECONCILE_ENABLED else 'Disabled'}")

@db.command()
def init():
    """Initialize database tables"""
    click.echo("Initializing database...")
    if not run_with_db(lambda manager: manager.create_tables()):
        click.echo("Database initialization failed!")
        raise SystemExit(1)
    click.echo("Database initialized successfully!")

@db.command('check')
def db_check():
    """Check database connection"""
    click.echo("Checking database connection...")
    if run_with_db(lambda manager: manager.check_connection()):
        click.echo("Database connection successful!")
    else:
        click.echo("Database connection failed!")
        raise SystemExit(1)

@db.command()
def drop():
    """Drop all database tables"""
    if click.confirm("Are you sure you want to drop all tables? This cannot be undone!"):
        click.echo("Dropping database tables...")
        run_with_db(lambda manager: manager.drop_tables())
        click.echo("Database tables dropped successfully!")

@runtime.command()
def ping():
    """Check the Docker daemon answers"""
    if run_with_services(lambda services: services.runtime.ping()):
        click.echo("Docker daemon reachable")
    else:
        click.echo("Docker daemon unreachable!")
        raise SystemExit(1)

@runtime.command()
def info():
    """Show Docker host information"""
    data = run_with_services(lambda services: services.runtime.host_info())
    echo_json({
        key: data.get(key)
        for key in ("ServerVersion", "Containers", "ContainersRunning", "Images", "NCPU", "MemTotal")
    })

@runtime.command()
@click.option('--managed/--all', default=False, help='Only containers created by vmbox')
def containers(managed):
    """List containers on the host"""
    for c in run_with_services(lambda services: services.runtime.list_all(managed_only=managed)):
        click.echo(f"{c['container_id'][:12]}  {c['state']:<10} {c['image']}  {','.join(c['names'])}")

@vm.command('list')
def vm_list():
    """List every VM record"""
    for record in run_with_services(lambda services: services.lifecycle.list_all()):
        click.echo(
            f"{record.id}  {record.status:<10} owner={record.owner_id} "
            f"port={record.port} name={record.name}"
        )

@vm.command()
def reconcile():
    """Reconcile all live VMs with their containers"""
    async def _reconcile(services):
        reconciled = await services.lifecycle.reconcile_all()
        orphans = await services.lifecycle.find_orphans()
        return reconciled, orphans

    reconciled, orphans = run_with_services(_reconcile)
    click.echo(f"Reconciled {reconciled} VM(s)")
    for c in orphans:
        click.echo(f"Orphaned container: {c['container_id'][:12]} {','.join(c['names'])}")

@vm.command('force-stop')
@click.argument('handle')
def force_stop(handle):
    """Stop a container immediately"""
    record = run_with_services(lambda services: services.lifecycle.admin_force_stop(handle))
    click.echo(f"Stopped {handle}" + (f" (VM {record.id}, {record.status})" if record else ""))

@vm.command('force-remove')
@click.argument('handle')
def force_remove(handle):
    """Remove a container and terminate its VM"""
    if click.confirm(f"Remove container {handle}?"):
        record = run_with_services(lambda services: services.lifecycle.admin_force_remove(handle))
        click.echo(f"Removed {handle}" + (f" (VM {record.id}, {record.status})" if record else ""))

@user.command('create')
@click.argument('username')
@click.option('--admin', is_flag=True, help='Grant the admin role')
@click.option('--credits', 'initial_credits', default=None, type=int, help='Starting balance')
def user_create(username, admin, initial_credits):
    """Create a user and print its API key"""
    api_key = secrets.token_urlsafe(32)

    async def _create(manager):
        values = {
            "username": username,
            "api_key": api_key,
            "role": UserRole.ADMIN.value if admin else UserRole.MEMBER.value,
        }
        if initial_credits is not None:
            values["credits"] = initial_credits
        async with manager.session() as session:
            created = await user_repository.create(session, **values)
        return created.id

    user_id = run_with_db(_create)
    click.echo(f"Created user {username} (id {user_id})")
    click.echo(f"API key: {api_key}")

@credits.command()
@click.argument('user_id', type=int)
@click.argument('amount', type=int)
@click.option('--remove', is_flag=True, help='Remove instead of add')
def adjust(user_id, amount, remove):
    """Add or remove credits for a user"""
    operation = "remove" if remove else "add"
    balance = run_with_services(lambda services: services.credits.adjust(user_id, amount, operation))
    click.echo(f"User {user_id} balance: {balance}")

@credits.command('requests')
@click.option('--status', 'status_filter', type=click.Choice(['pending', 'approved', 'denied']), default=None)
def list_requests(status_filter):
    """List credit requests"""
    requests = run_with_services(lambda services: services.credit_requests.list_all(status_filter))
    for request in requests:
        click.echo(
            f"{request.id}\tuser {request.user_id}\t{request.amount}\t{request.status}\t{request.reason}"
        )

@credits.command('review')
@click.argument('request_id', type=int)
@click.argument('action', type=click.Choice(['approve', 'deny']))
@click.option('--note', default=None, help='Review note shown to the requester')
def review_request(request_id, action, note):
    """Approve or deny a pending credit request"""
    request = run_with_services(
        lambda services: services.credit_requests.review(request_id, None, action, note)
    )
    click.echo(f"Credit request {request.id} {request.status}")

@vm.command('stats')
def vm_stats():
    """User, VM and pending request counts"""
    echo_json(run_with_services(lambda services: services.stats()))

if __name__ == "__main__":
    cli()
