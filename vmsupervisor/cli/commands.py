#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
CLI commands module for the VM supervisor.
Every command prints a single JSON object; failures exit with code 1.
"""
import json
from typing import List, Optional

import typer

from vmsupervisor import __version__
from vmsupervisor.client import DEFAULT_URL, ClientError, SupervisorClient
from vmsupervisor.utils.validation import fail, is_truthy, succeed

app = typer.Typer(
    name="vmctl",
    help="vmctl - control a VM supervisor daemon",
    no_args_is_help=True,
)


def version_callback(value: bool) -> None:
    if value:
        typer.echo(f"vmctl {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    ctx: typer.Context,
    url: str = typer.Option(DEFAULT_URL, "--url", envvar="VMSUP_URL", help="Supervisor base URL"),
    timeout: int = typer.Option(30, "--http-timeout", envvar="VMSUP_TIMEOUT", help="HTTP timeout in seconds"),
    insecure: str = typer.Option("false", "--insecure", envvar="VMSUP_INSECURE", help="Skip TLS verification"),
    version: Optional[bool] = typer.Option(None, "--version", callback=version_callback, is_eager=True),
) -> None:
    """vmctl - control a VM supervisor daemon."""
    ctx.obj = {"url": url, "timeout": timeout, "verify": not is_truthy(insecure)}


def _client(ctx: typer.Context) -> SupervisorClient:
    opts = ctx.obj or {}
    try:
        return SupervisorClient(opts.get("url"), timeout=opts.get("timeout", 30), verify=opts.get("verify", True))
    except ClientError as e:
        fail(e.message)


def _fail_from(e: ClientError) -> None:
    fail(e.message, status=e.status, kind=e.kind, vm_id=e.vm_id)


@app.command("init")
def init_cmd(ctx: typer.Context):
    """Initialize the supervisor (recover persisted state)."""
    try:
        result = _client(ctx).initialize_system()
    except ClientError as e:
        _fail_from(e)
    succeed(result)


@app.command("create")
def create_cmd(
    ctx: typer.Context,
    memory_mb: int = typer.Argument(128, help="Memory in MiB"),
    vcpus: int = typer.Argument(1, help="Number of vCPUs"),
    name: str = typer.Argument("", help="Free-form VM label"),
    wait: bool = typer.Option(False, "--wait", help="Block until the VM is running"),
    timeout: Optional[float] = typer.Option(None, "--timeout", help="Provisioning timeout in seconds"),
):
    """Create a VM and print its id."""
    try:
        vm_id = _client(ctx).create_vm(memory_mb, vcpus, name, wait=wait, timeout=timeout)
    except ClientError as e:
        _fail_from(e)
    succeed({"status": "success", "vm_id": vm_id})


# `start` is kept for scripts written against vm-manager.sh.
app.command("start", help="Alias of create.")(create_cmd)


@app.command("stop")
def stop_cmd(
    ctx: typer.Context,
    vm_id: str,
    timeout: Optional[float] = typer.Option(None, "--timeout", help="Teardown timeout in seconds"),
):
    """Stop a running VM."""
    try:
        vm = _client(ctx).stop_vm(vm_id, timeout=timeout)
    except ClientError as e:
        _fail_from(e)
    succeed({"status": "success", "vm": vm})


@app.command("destroy")
def destroy_cmd(ctx: typer.Context, vm_id: str):
    """Destroy a stopped or failed VM."""
    try:
        vm = _client(ctx).destroy_vm(vm_id)
    except ClientError as e:
        _fail_from(e)
    succeed({"status": "success", "vm": vm})


@app.command("list")
def list_cmd(
    ctx: typer.Context,
    state: Optional[List[str]] = typer.Option(None, "--state", help="Filter by state (repeatable)"),
):
    """List VMs."""
    try:
        vms = _client(ctx).list_vms(state)
    except ClientError as e:
        _fail_from(e)
    succeed({"status": "success", "vms": vms, "count": len(vms)})


@app.command("info")
def info_cmd(ctx: typer.Context, vm_id: str):
    """Show one VM, including live metrics when running."""
    try:
        vm = _client(ctx).get_vm_info(vm_id)
    except ClientError as e:
        _fail_from(e)
    succeed({"status": "success", "vm": vm})


@app.command("host")
def host_cmd(ctx: typer.Context):
    """Show host capacity and reservations."""
    try:
        capacity = _client(ctx).host()
    except ClientError as e:
        _fail_from(e)
    succeed({"status": "success", "capacity": capacity})


@app.command("graceful-shutdown")
def graceful_shutdown_cmd(
    ctx: typer.Context,
    timeout: Optional[float] = typer.Option(None, "--timeout", help="Per-VM teardown timeout in seconds"),
):
    """Stop every running VM (host maintenance); exits 1 if any stop failed."""
    try:
        result = _client(ctx).graceful_shutdown(timeout=timeout)
    except ClientError as e:
        _fail_from(e)
    if result.get("status") != "success":
        typer.echo(json.dumps(result))
        raise typer.Exit(code=1)
    succeed(result)


@app.command("serve")
def serve_cmd():
    """Run the supervisor daemon in the foreground."""
    from vmsupervisor.agent import main as agent_main

    agent_main()
