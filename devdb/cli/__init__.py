"""
Command Line Interface for devdb.

All commands except ``serve`` talk to a running API server.
"""

import getpass
import json
from typing import Any, Dict, List, Optional

import httpx
import typer
import uvicorn
from rich import print as rprint
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from ..config import get_settings
from ..logging_setup import configure_logging

app = typer.Typer(help="devdb - short-lived development databases on Kubernetes")
project_app = typer.Typer(help="Manage projects")
db_app = typer.Typer(help="Manage database instances")
snapshot_app = typer.Typer(help="Inspect volume snapshots")
backup_app = typer.Typer(help="Capture backups of live databases")
journal_app = typer.Typer(help="Inspect and clean up provisioning flows")
app.add_typer(project_app, name="project")
app.add_typer(db_app, name="db")
app.add_typer(snapshot_app, name="snapshot")
app.add_typer(backup_app, name="backup")
app.add_typer(journal_app, name="journal")

console = Console()

STATUS_STYLE = {
    "Running": "🟢",
    "Pending": "🟡",
    "Deleting": "🟠",
    "Failed": "🔴",
    "in_progress": "🟡",
    "completed": "✅",
    "failed": "❌",
    "abandoned": "⏹️",
}


class APIError(Exception):
    def __init__(self, status_code: int, detail: str):
        super().__init__(detail)
        self.status_code = status_code
        self.detail = detail


class DevDBClient:
    """Small synchronous client for the devdb API."""

    def __init__(self, base_url: str, timeout: float = 120.0, transport=None):
        self.http = httpx.Client(base_url=base_url, timeout=timeout, transport=transport)

    def request(self, method: str, path: str, **kwargs) -> Any:
        response = self.http.request(method, path, **kwargs)
        if response.is_error:
            try:
                detail = response.json().get("detail", response.text)
            except ValueError:
                detail = response.text
            raise APIError(response.status_code, str(detail))
        return response.json()

    def create_project(self, body: Dict[str, Any]) -> Dict[str, Any]:
        return self.request("POST", "/projects", json=body)

    def list_projects(self, owner: Optional[str] = None) -> List[Dict[str, Any]]:
        params = {"owner": owner} if owner else None
        return self.request("GET", "/projects", params=params)

    def get_project(self, project_id: str) -> Dict[str, Any]:
        return self.request("GET", f"/projects/{project_id}")

    def create_database(self, project_id: str, body: Dict[str, Any]) -> Dict[str, Any]:
        return self.request("POST", f"/projects/{project_id}/databases", json=body)

    def list_databases(self, project_id: str) -> List[Dict[str, Any]]:
        return self.request("GET", f"/projects/{project_id}/databases")

    def delete_database(self, project_id: str, name: str) -> Dict[str, Any]:
        return self.request("DELETE", f"/projects/{project_id}/databases/{name}")

    def list_snapshots(self, project_id: str) -> List[Dict[str, Any]]:
        return self.request("GET", f"/projects/{project_id}/snapshots")

    def create_backup(self, project_id: str, body: Dict[str, Any]) -> Dict[str, Any]:
        return self.request("POST", f"/projects/{project_id}/backup", json=body)

    def list_provisioning(
        self, status: Optional[str] = None, project_id: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        params = {k: v for k, v in (("status", status), ("project_id", project_id)) if v}
        return self.request("GET", "/provisioning", params=params)

    def abandon(self, record_id: str) -> Dict[str, Any]:
        return self.request("POST", f"/provisioning/{record_id}/abandon")


_api_url: Optional[str] = None


def get_client() -> DevDBClient:
    return DevDBClient(_api_url or get_settings().api_url)


def _fail(error: Exception) -> None:
    if isinstance(error, APIError):
        console.print(f"❌ {error.detail} (HTTP {error.status_code})")
    else:
        console.print(f"❌ Cannot reach devdb API: {error}")
    raise typer.Exit(code=1)


@app.callback()
def main(
    api_url: Optional[str] = typer.Option(
        None, "--api-url", envvar="DEVDB_API_URL", help="devdb API URL"
    ),
):
    """Point every command at an API server."""
    global _api_url
    _api_url = api_url


@app.command()
def serve(
    host: Optional[str] = typer.Option(None, help="Host to bind the server to"),
    port: Optional[int] = typer.Option(None, help="Port to run the API server on"),
    dev: bool = typer.Option(False, help="Run in development mode with reload"),
):
    """Start the devdb API server."""
    settings = get_settings()
    configure_logging(settings)
    bind_host = host or settings.api_host
    bind_port = port or settings.api_port
    rprint(Panel.fit(f"Starting devdb on http://{bind_host}:{bind_port}", style="bold blue"))
    uvicorn.run(
        "devdb.main:app",
        host=bind_host,
        port=bind_port,
        reload=dev,
        workers=1 if dev else settings.api_workers,
    )


# Projects
@project_app.command("create")
def project_create(
    name: str = typer.Argument(..., help="Project name"),
    owner: Optional[str] = typer.Option(None, help="Owner (defaults to current user)"),
    db_type: str = typer.Option("postgres", "--type", "-t", help="postgres or mysql"),
    db_version: Optional[str] = typer.Option(None, "--version", "-v", help="Engine version"),
    backup_location: Optional[str] = typer.Option(
        None, "--backup-location", "-b", help="Backup URL to seed the first database"
    ),
    username: Optional[str] = typer.Option(None, "--username", "-u"),
    password: Optional[str] = typer.Option(None, "--password", "-p"),
    database: Optional[str] = typer.Option(None, "--database", "-d"),
):
    """Register a new project."""
    body: Dict[str, Any] = {
        "owner": owner or getpass.getuser(),
        "name": name,
        "dbType": db_type,
    }
    if db_version:
        body["dbVersion"] = db_version
    if backup_location:
        body["backupLocation"] = backup_location
    credentials = {
        k: v
        for k, v in (("username", username), ("password", password), ("databaseName", database))
        if v
    }
    if credentials:
        body["credentials"] = credentials

    try:
        project = get_client().create_project(body)
    except (APIError, httpx.HTTPError) as e:
        _fail(e)

    creds = project["defaultCredentials"]
    console.print(f"✅ Created project [bold]{project['id']}[/bold]")
    console.print(
        f"   {project['engineType']} {project['engineVersion']}  "
        f"user={creds['username']} password={creds.get('password', '')} "
        f"database={creds['databaseName']}"
    )


@project_app.command("list")
def project_list(owner: Optional[str] = typer.Option(None, help="Only this owner's projects")):
    """List projects."""
    try:
        projects = get_client().list_projects(owner)
    except (APIError, httpx.HTTPError) as e:
        _fail(e)

    if not projects:
        console.print("No projects found")
        return

    table = Table(title="Projects", show_header=True, header_style="bold cyan")
    table.add_column("ID", style="yellow")
    table.add_column("Owner")
    table.add_column("Engine", style="magenta")
    table.add_column("Backup")
    for project in projects:
        table.add_row(
            project["id"],
            project["owner"],
            f"{project['engineType']} {project['engineVersion']}",
            project.get("backupLocation") or "-",
        )
    console.print(table)


@project_app.command("show")
def project_show(project_id: str = typer.Argument(..., help="Project ID")):
    """Show a project and its databases."""
    try:
        project = get_client().get_project(project_id)
    except (APIError, httpx.HTTPError) as e:
        _fail(e)

    rprint(
        Panel.fit(
            f"[bold]{project['id']}[/bold]\n"
            f"Owner: {project['owner']}\n"
            f"Engine: {project['engineType']} {project['engineVersion']}\n"
            f"Backup: {project.get('backupLocation') or '-'}\n"
            f"Created: {project['createdAt']}",
            title="Project",
        )
    )
    _print_databases(project.get("databases") or [])


# Databases
def _print_databases(databases: List[Dict[str, Any]]) -> None:
    if not databases:
        console.print("No databases found")
        return

    table = Table(title="Databases", show_header=True, header_style="bold magenta")
    table.add_column("Name", style="cyan")
    table.add_column("Status")
    table.add_column("Host")
    table.add_column("Port")
    table.add_column("User")
    table.add_column("Database")
    for db in databases:
        table.add_row(
            db["name"],
            f"{STATUS_STYLE.get(db['status'], '❓')} {db['status']}",
            db.get("host") or "-",
            str(db.get("port") or "-"),
            db.get("username") or "-",
            db.get("database") or "-",
        )
    console.print(table)


@db_app.command("create")
def db_create(
    name: str = typer.Argument(..., help="Database name"),
    project: str = typer.Option(..., "--project", help="Project ID"),
    backup_location: Optional[str] = typer.Option(
        None, "--backup-location", "-b", help="Backup URL (first database only)"
    ),
    username: Optional[str] = typer.Option(None, "--username", "-u"),
    password: Optional[str] = typer.Option(None, "--password", "-p"),
    database: Optional[str] = typer.Option(None, "--database", "-d"),
):
    """Create a database in a project."""
    body: Dict[str, Any] = {"name": name}
    if backup_location:
        body["backupLocation"] = backup_location
    credentials = {
        k: v
        for k, v in (("username", username), ("password", password), ("databaseName", database))
        if v
    }
    if credentials:
        body["credentials"] = credentials

    try:
        result = get_client().create_database(project, body)
    except (APIError, httpx.HTTPError) as e:
        _fail(e)

    if result.get("restoredFromSnapshot"):
        origin = f"cloned from snapshot {result.get('sourceSnapshot')}"
    elif result.get("restoredFromBackup"):
        origin = f"restored from {result.get('backupLocation')}"
    else:
        origin = "empty"
    creds = result["credentials"]
    console.print(f"✅ Created database [bold]{result['name']}[/bold] ({origin})")
    console.print(f"   host={result.get('host')} port={result.get('port')}")
    console.print(
        f"   user={creds['username']} password={creds['password']} "
        f"database={creds['databaseName']}"
    )


@db_app.command("list")
def db_list(project: str = typer.Option(..., "--project", help="Project ID")):
    """List databases in a project."""
    try:
        databases = get_client().list_databases(project)
    except (APIError, httpx.HTTPError) as e:
        _fail(e)
    _print_databases(databases)


@db_app.command("delete")
def db_delete(
    name: str = typer.Argument(..., help="Database name"),
    project: str = typer.Option(..., "--project", help="Project ID"),
):
    """Delete a database from a project."""
    try:
        result = get_client().delete_database(project, name)
    except (APIError, httpx.HTTPError) as e:
        _fail(e)

    suffix = " (volume released)" if result.get("volumeReleased") else ""
    console.print(f"✅ Deleted database {name}{suffix}")


# Snapshots
@snapshot_app.command("list")
def snapshot_list(project: str = typer.Option(..., "--project", help="Project ID")):
    """List a project's snapshots, newest first."""
    try:
        snapshots = get_client().list_snapshots(project)
    except (APIError, httpx.HTTPError) as e:
        _fail(e)

    if not snapshots:
        console.print("No snapshots found")
        return

    table = Table(title="Snapshots", show_header=True, header_style="bold cyan")
    table.add_column("Name", style="yellow")
    table.add_column("Source volume")
    table.add_column("Created")
    table.add_column("Ready")
    for snap in snapshots:
        table.add_row(
            snap["name"],
            snap.get("sourceVolumeName") or "-",
            snap.get("creationTimestamp") or "-",
            "✅" if snap.get("readyToUse") else "⏳",
        )
    console.print(table)


# Backups
@backup_app.command("create")
def backup_create(
    project: str = typer.Option(..., "--project", help="Project ID"),
    host: Optional[str] = typer.Option(None, help="Source database host"),
    port: Optional[int] = typer.Option(None, help="Source database port [default: 5432]"),
    username: str = typer.Option(..., "--username", "-u"),
    database: Optional[str] = typer.Option(None, "--database", "-d"),
    rds_instance: Optional[str] = typer.Option(
        None, help="RDS instance identifier to look up host, port and database"
    ),
    password: Optional[str] = typer.Option(None, "--password", "-p", envvar="DEVDB_SOURCE_PASSWORD"),
    iam_auth: bool = typer.Option(False, "--iam-auth", help="Use an RDS IAM auth token"),
    region: Optional[str] = typer.Option(None, help="AWS region for IAM auth"),
    endpoint_override: Optional[str] = typer.Option(
        None, help="Address to dial instead of the host (tunnel or proxy)"
    ),
    bucket: Optional[str] = typer.Option(None, help="Target bucket"),
    key: Optional[str] = typer.Option(None, help="Target object key"),
    target_region: Optional[str] = typer.Option(None, help="Region of the target bucket"),
):
    """Dump a live database into object storage."""
    if not rds_instance:
        if not host or not database:
            console.print("❌ --host and --database are required without --rds-instance")
            raise typer.Exit(code=1)
        port = port or 5432
    body = {
        "host": host,
        "port": port,
        "username": username,
        "database": database,
        "password": password,
        "iamAuth": iam_auth,
        "region": region,
        "endpointOverride": endpoint_override,
        "rdsInstance": rds_instance,
        "targetBucket": bucket,
        "targetKey": key,
        "targetRegion": target_region,
    }
    body = {k: v for k, v in body.items() if v is not None}

    try:
        artifact = get_client().create_backup(project, body)
    except (APIError, httpx.HTTPError) as e:
        _fail(e)

    console.print(f"✅ Backup uploaded to {artifact['uri']} ({artifact['sizeBytes']} bytes)")


# Provisioning journal
@journal_app.command("list")
def journal_list(
    status: Optional[str] = typer.Option(None, help="in_progress, completed, failed or abandoned"),
    project: Optional[str] = typer.Option(None, "--project", help="Project ID"),
    as_json: bool = typer.Option(False, "--json", help="Print raw JSON"),
):
    """List provisioning flows."""
    try:
        records = get_client().list_provisioning(status=status, project_id=project)
    except (APIError, httpx.HTTPError) as e:
        _fail(e)

    if as_json:
        console.print_json(json.dumps(records))
        return
    if not records:
        console.print("No provisioning records found")
        return

    table = Table(title="Provisioning flows", show_header=True, header_style="bold magenta")
    table.add_column("ID", style="yellow")
    table.add_column("Project")
    table.add_column("Database")
    table.add_column("Strategy")
    table.add_column("Step")
    table.add_column("Status")
    table.add_column("Error")
    for record in records:
        table.add_row(
            record["id"],
            record["projectId"],
            record["instanceName"],
            record.get("strategy") or "-",
            record["step"],
            f"{STATUS_STYLE.get(record['status'], '❓')} {record['status']}",
            record.get("error") or "",
        )
    console.print(table)


@journal_app.command("abandon")
def journal_abandon(record_id: str = typer.Argument(..., help="Provisioning record ID")):
    """Tear down what an unfinished flow created."""
    try:
        result = get_client().abandon(record_id)
    except (APIError, httpx.HTTPError) as e:
        _fail(e)

    removed = ", ".join(result.get("removed") or []) or "nothing left to remove"
    console.print(f"✅ Abandoned {record_id}: {removed}")


if __name__ == "__main__":
    app()
