#!/usr/bin/env python3
"""
CLI tool for the tug operator.

Provides a kubectl-like interface for managed resources.
"""

import json
from typing import Any, Dict, Optional

import click
import requests
import yaml
from tabulate import tabulate

API_BASE_URL = "http://localhost:8000/api/v1"


class TugOperatorCLI:
    """CLI client for the tug operator API"""

    def __init__(self, base_url: str = API_BASE_URL):
        self.base_url = base_url.rstrip("/")

    def _make_request(self, method: str, endpoint: str, **kwargs):
        """Make HTTP request to the API, exiting non-zero on failure"""
        url = f"{self.base_url}{endpoint}"
        try:
            response = requests.request(method, url, **kwargs)
            response.raise_for_status()
        except requests.exceptions.RequestException as e:
            click.echo(f"Error: {e}", err=True)
            if getattr(e, "response", None) is not None:
                try:
                    click.echo(f"Detail: {e.response.json()}", err=True)
                except ValueError:
                    click.echo(f"Response: {e.response.text}", err=True)
            raise click.exceptions.Exit(1)

        if response.status_code == 204 or not response.content:
            return {}
        return response.json()


def _load_manifest(filename: str) -> Dict[str, Any]:
    with open(filename, "r") as f:
        if filename.endswith(".yaml") or filename.endswith(".yml"):
            return yaml.safe_load(f)
        return json.load(f)


def _condition_status(resource: Dict[str, Any], condition_type: str) -> str:
    for condition in (resource.get("status") or {}).get("conditions", []):
        if condition.get("type") == condition_type:
            return condition.get("status", "Unknown")
    return "Unknown"


def _print(data: Any, output: str) -> None:
    if output == "yaml":
        click.echo(yaml.dump(data, default_flow_style=False))
    else:
        click.echo(json.dumps(data, indent=2))


@click.group()
@click.option(
    "--api-url",
    envvar="TUGCTL_API_URL",
    default=API_BASE_URL,
    show_default=True,
    help="Base URL of the tug operator API",
)
@click.pass_context
def cli(ctx, api_url):
    """Tug operator CLI - kubectl-like interface for managed resources"""
    ctx.obj = TugOperatorCLI(api_url)


@cli.command()
@click.option(
    "--filename", "-f", type=click.Path(exists=True), required=True,
    help="Manifest with kind, name, namespace and spec",
)
@click.pass_obj
def apply(client: TugOperatorCLI, filename):
    """Create a resource from a YAML/JSON file, or overwrite its spec"""
    data = _load_manifest(filename)
    kind = data.get("kind")
    name = data.get("name")
    namespace = data.get("namespace", "default")

    try:
        existing = requests.request(
            "GET", f"{client.base_url}/resources/by-name/{kind}/{namespace}/{name}"
        )
    except requests.exceptions.RequestException as e:
        click.echo(f"Error: {e}", err=True)
        raise click.exceptions.Exit(1)

    if existing.status_code == 200:
        resource_id = existing.json()["id"]
        update = {"spec": data.get("spec", {})}
        if "management_policies" in data:
            update["management_policies"] = data["management_policies"]
        result = client._make_request("PUT", f"/resources/{resource_id}", json=update)
        click.echo(f"{kind}/{namespace}/{name} configured")
    else:
        result = client._make_request("POST", "/resources", json=data)
        click.echo(f"{kind}/{namespace}/{name} created")

    click.echo(f"ID: {result['id']}")
    click.echo(f"Generation: {result['generation']}")


@cli.command()
@click.option("--kind", "-k", default=None, help="Only show this kind")
@click.option("--namespace", "-n", default=None, help="Only show this namespace")
@click.option(
    "--output", "-o", type=click.Choice(["table", "json", "yaml"]), default="table"
)
@click.pass_obj
def get(client: TugOperatorCLI, kind, namespace, output):
    """List resources"""
    params = {}
    if kind:
        params["kind"] = kind
    if namespace:
        params["namespace"] = namespace

    result = client._make_request("GET", "/resources", params=params)

    if output != "table":
        _print(result, output)
        return

    if not result:
        click.echo("No resources found")
        return

    headers = ["ID", "Kind", "Namespace", "Name", "Ready", "Synced", "Generation"]
    rows = [
        [
            r["id"],
            r["kind"],
            r["namespace"],
            r["name"],
            _condition_status(r, "Ready"),
            _condition_status(r, "Synced"),
            f"{r['observed_generation']}/{r['generation']}",
        ]
        for r in result
    ]
    click.echo(tabulate(rows, headers=headers, tablefmt="grid"))


@cli.command()
@click.argument("resource_id", type=int)
@click.option("--output", "-o", type=click.Choice(["json", "yaml"]), default="yaml")
@click.pass_obj
def describe(client: TugOperatorCLI, resource_id, output):
    """Describe a specific resource"""
    result = client._make_request("GET", f"/resources/{resource_id}")
    _print(result, output)


@cli.command(name="set")
@click.argument("resource_id", type=int)
@click.option("--authoritative", type=int, default=None, help="New authoritative_value")
@click.option("--contended", type=int, default=None, help="New contended_value")
@click.pass_obj
def set_values(
    client: TugOperatorCLI,
    resource_id,
    authoritative: Optional[int],
    contended: Optional[int],
):
    """Overwrite spec values on a resource (last writer wins)"""
    if authoritative is None and contended is None:
        raise click.UsageError("Give --authoritative and/or --contended")

    current = client._make_request("GET", f"/resources/{resource_id}")
    spec = dict(current.get("spec", {}))
    if authoritative is not None:
        spec["authoritative_value"] = authoritative
    if contended is not None:
        spec["contended_value"] = contended

    result = client._make_request(
        "PUT", f"/resources/{resource_id}", json={"spec": spec}
    )
    click.echo("Resource updated")
    click.echo(f"Generation: {result['generation']}")


@cli.command()
@click.argument("resource_id", type=int)
@click.confirmation_option(prompt="Are you sure you want to delete this resource?")
@click.pass_obj
def delete(client: TugOperatorCLI, resource_id):
    """Delete a resource"""
    client._make_request("DELETE", f"/resources/{resource_id}")
    click.echo("Resource marked for deletion")


@cli.command()
@click.argument("resource_id", type=int)
@click.pass_obj
def reconcile(client: TugOperatorCLI, resource_id):
    """Manually trigger reconciliation for a resource"""
    client._make_request("POST", f"/resources/{resource_id}/reconcile")
    click.echo("Reconciliation triggered successfully")


@cli.command()
@click.argument("resource_id", type=int)
@click.option("--limit", "-l", default=10, help="Number of history entries to show")
@click.pass_obj
def history(client: TugOperatorCLI, resource_id, limit):
    """Show reconciliation history for a resource"""
    result = client._make_request(
        "GET", f"/resources/{resource_id}/history", params={"limit": limit}
    )

    headers = ["ID", "Generation", "Success", "Action", "Trigger", "Drift", "Time", "Error"]
    rows = []
    for entry in result:
        rows.append(
            [
                entry["id"],
                entry["generation"],
                "✓" if entry["success"] else "✗",
                entry["action"],
                entry.get("trigger_reason") or "",
                "yes" if entry.get("drift_detected") else "",
                entry["reconcile_time"],
                entry.get("error_message") or "",
            ]
        )

    click.echo(tabulate(rows, headers=headers, tablefmt="grid"))


@cli.command()
@click.pass_obj
def providers(client: TugOperatorCLI):
    """List registered providers and the kinds they manage"""
    result = client._make_request("GET", "/providers")
    rows = [[p["name"], p["version"], ", ".join(p["kinds"])] for p in result]
    click.echo(tabulate(rows, headers=["Name", "Version", "Kinds"], tablefmt="grid"))


if __name__ == "__main__":
    cli()
