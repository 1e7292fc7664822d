#!/usr/bin/env python3
"""
CLI tool for the playbook operator.

Provides a kubectl-like interface for managing custom resources through
the operator's REST API.
"""

import json
import os

import click
import requests
import yaml
from tabulate import tabulate

API_BASE_URL = os.getenv("CRCTL_SERVER", "http://localhost:8000/api/v1")
DEFAULT_NAMESPACE = "default"


class OperatorCLI:
    """CLI client for the playbook operator API"""

    def __init__(self, base_url: str = API_BASE_URL, timeout: float = 30):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    def _make_request(self, method: str, endpoint: str, allow=(), **kwargs):
        """
        Make HTTP request to the API.

        Responses with a status code in ``allow`` return None instead of
        failing the command.
        """
        url = f"{self.base_url}{endpoint}"
        try:
            response = requests.request(method, url, timeout=self.timeout, **kwargs)
        except requests.exceptions.RequestException as e:
            raise click.ClickException(f"Cannot reach {self.base_url}: {e}")

        if response.status_code in allow:
            return None
        if response.status_code >= 400:
            try:
                detail = response.json().get("detail", response.text)
            except ValueError:
                detail = response.text
            raise click.ClickException(f"{response.status_code}: {detail}")
        return response.json()


def load_manifest(filename: str) -> dict:
    """Read a YAML or JSON resource manifest"""
    with open(filename, "r") as f:
        if filename.endswith(".json"):
            data = json.load(f)
        else:
            data = yaml.safe_load(f)

    if not isinstance(data, dict):
        raise click.ClickException(f"{filename}: manifest must be a mapping")
    metadata = data.get("metadata") or {}
    if not metadata.get("name"):
        raise click.ClickException(f"{filename}: metadata.name is required")
    return data


def status_row(resource: dict) -> list:
    """Table row summarising a resource and its status"""
    metadata = resource.get("metadata") or {}
    status = resource.get("status") or {}
    return [
        metadata.get("name", ""),
        metadata.get("namespace", ""),
        status.get("phase") or "Pending",
        status.get("reason", ""),
        status.get("lastTransitionTime", ""),
    ]


STATUS_HEADERS = ["NAME", "NAMESPACE", "PHASE", "REASON", "LAST TRANSITION"]


@click.group()
@click.option(
    "--server",
    "-s",
    default=API_BASE_URL,
    show_default=True,
    help="Base URL of the operator API",
)
@click.pass_context
def cli(ctx, server):
    """Playbook operator CLI - kubectl-like interface for custom resources"""
    ctx.obj = OperatorCLI(server)


@cli.command()
@click.option(
    "--filename", "-f", required=True, type=click.Path(exists=True, dir_okay=False)
)
@click.pass_obj
def apply(client, filename):
    """Create or replace a resource from a YAML/JSON manifest"""
    data = load_manifest(filename)
    metadata = data["metadata"]
    name = metadata["name"]
    namespace = metadata.get("namespace") or DEFAULT_NAMESPACE
    spec = data.get("spec") or {}

    body = {"name": name, "spec": spec}
    if metadata.get("labels"):
        body["labels"] = metadata["labels"]

    result = client._make_request(
        "POST", f"/namespaces/{namespace}/resources", allow=(409,), json=body
    )
    if result is not None:
        click.echo(f"resource {namespace}/{name} created")
        return

    client._make_request(
        "PUT", f"/namespaces/{namespace}/resources/{name}", json={"spec": spec}
    )
    click.echo(f"resource {namespace}/{name} configured")


@cli.command()
@click.argument("name", required=False)
@click.option("--namespace", "-n", default=DEFAULT_NAMESPACE, show_default=True)
@click.option("--all-namespaces", "-A", is_flag=True, help="List across namespaces")
@click.option(
    "--output", "-o", type=click.Choice(["table", "json", "yaml"]), default="table"
)
@click.pass_obj
def get(client, name, namespace, all_namespaces, output):
    """List resources, or show one resource"""
    if name:
        result = client._make_request(
            "GET", f"/namespaces/{namespace}/resources/{name}"
        )
        resources = [result]
    elif all_namespaces:
        resources = client._make_request("GET", "/resources")
    else:
        resources = client._make_request("GET", f"/namespaces/{namespace}/resources")

    if output == "json":
        click.echo(json.dumps(resources if not name else resources[0], indent=2))
    elif output == "yaml":
        click.echo(
            yaml.safe_dump(resources if not name else resources[0], sort_keys=False)
        )
    elif not resources:
        click.echo("No resources found")
    else:
        rows = [status_row(resource) for resource in resources]
        click.echo(tabulate(rows, headers=STATUS_HEADERS, tablefmt="plain"))


@cli.command()
@click.argument("name")
@click.option("--namespace", "-n", default=DEFAULT_NAMESPACE, show_default=True)
@click.pass_obj
def describe(client, name, namespace):
    """Describe a resource, including its status message"""
    result = client._make_request("GET", f"/namespaces/{namespace}/resources/{name}")
    click.echo(yaml.safe_dump(result, sort_keys=False, default_flow_style=False))


@cli.command()
@click.argument("name")
@click.option("--namespace", "-n", default=DEFAULT_NAMESPACE, show_default=True)
@click.confirmation_option(prompt="Are you sure you want to delete this resource?")
@click.pass_obj
def delete(client, name, namespace):
    """Delete a resource (runs the deprovision workflow)"""
    client._make_request("DELETE", f"/namespaces/{namespace}/resources/{name}")
    click.echo(f"resource {namespace}/{name} deleted")


@cli.command()
@click.option("--namespace", "-n", default=None, help="Only watch one namespace")
@click.pass_obj
def watch(client, namespace):
    """Print resource events as they happen"""
    params = {"namespace": namespace} if namespace else {}
    try:
        response = requests.get(
            f"{client.base_url}/events", params=params, stream=True, timeout=None
        )
        response.raise_for_status()
    except requests.exceptions.RequestException as e:
        raise click.ClickException(f"Cannot watch events: {e}")

    try:
        for line in response.iter_lines(decode_unicode=True):
            if not line or not line.startswith("data: "):
                continue
            event = json.loads(line[len("data: ") :])
            status = (event.get("resource") or {}).get("status") or {}
            click.echo(
                f"{event['timestamp']}  {event['event_type']:<10}  "
                f"{event['namespace']}/{event['name']}  "
                f"{status.get('phase') or '-'}"
            )
    except KeyboardInterrupt:
        click.echo("\nStopped watching")
    finally:
        response.close()


if __name__ == "__main__":
    cli()
