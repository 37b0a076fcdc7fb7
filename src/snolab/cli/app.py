# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/snolab/cli/app.py
from __future__ import annotations

from pathlib import Path
from typing import Optional

import typer
import yaml
from pydantic import ValidationError

from snolab.bootstrap.host.models import TargetHost
from snolab.bootstrap.host.prerequisites import HostPrerequisites
from snolab.bootstrap.host.registry import HostRegistry
from snolab.config.loader import load_settings
from snolab.config.models import Settings
from snolab.deploy.cleanup import CleanupOrchestrator
from snolab.deploy.collector import OutcomeCollector, render_summary
from snolab.deploy.executor import DeploymentExecutor
from snolab.deploy.planner import compute_plan, confirm_plan, is_dotted_quad, render_plan_table
from snolab.errors import AuthError, HostConnectionError, ProvisionError, VipPlanError
from snolab.kcli.cli_runner import KcliRunner
from snolab.logging.log import init_logging
from snolab.observers.dispatcher import EventBus
from snolab.observers.events import VipPlanComputed, new_ctx
from snolab.observers.jsonfile import JsonFileObserver
from snolab.observers.logger import LoggerObserver
from snolab.utils.execution import ExecutionContext
from snolab.utils.ssh import open_ssh
from snolab.utils.ssh_runner import SSHRunner

# ------------------------------------------------------------------------------
# CLI setup
# ------------------------------------------------------------------------------

app = typer.Typer(
    help="Provision single-node OpenShift clusters on a remote libvirt host, or clean them up.",
    add_completion=False,
)

EVENTS_DIR = Path.home() / ".snolab" / "logs"


def fail(message: str) -> None:
    typer.secho(f"ERROR: {message}", fg=typer.colors.RED, err=True)
    raise typer.Exit(1)


def build_bus(logger, run_id: str) -> EventBus:
    return EventBus(observers=[
        LoggerObserver(logger),
        JsonFileObserver(EVENTS_DIR / f"{run_id}.jsonl"),
    ])


def resolve_settings(config: Optional[Path]) -> Settings:
    try:
        return load_settings(config)
    except (ValidationError, OSError, yaml.YAMLError) as exc:
        fail(f"invalid configuration: {exc}")


def ensure_pull_secret(settings: Settings, assume_yes: bool) -> Path:
    path = settings.pull_credential_path
    if path.is_file():
        return path
    typer.echo(f"Pull secret not found at {path}")
    typer.echo("  Download it from https://console.redhat.com/openshift/install/pull-secret")
    if not assume_yes:
        answer = typer.prompt("Path to the pull secret (empty to abort)", default="", show_default=False)
        if answer and Path(answer).expanduser().is_file():
            settings.pull_credential_path = Path(answer).expanduser()
            return settings.pull_credential_path
    fail(f"pull secret missing: {path}")


def connect(host: TargetHost, settings: Settings) -> SSHRunner:
    typer.echo(f"[ssh] connecting to {host.username}@{host.address}...")
    try:
        return open_ssh(host, connect_timeout=settings.connect_timeout)
    except (HostConnectionError, AuthError) as exc:
        fail(str(exc))


# ------------------------------------------------------------------------------
# Provision
# ------------------------------------------------------------------------------

def provision(
    *,
    host: TargetHost,
    count: int,
    settings: Settings,
    assume_yes: bool,
    wait: bool,
    dry_run: bool,
    logger,
    run_id: str,
) -> None:
    kcli = KcliRunner()
    if not kcli.available():
        fail("kcli is not installed locally (https://kcli.readthedocs.io)")
    logger.info("kcli %s", kcli.version())
    ensure_pull_secret(settings, assume_yes)

    ctx = ExecutionContext(
        host=host,
        scratch_root=settings.scratch_root,
        name_prefix=settings.name_prefix,
        dry_run=dry_run,
    )
    bus = build_bus(logger, run_id)
    event_ctx = new_ctx(env="provision", context=ctx.registry_name, run_id=run_id)

    with connect(host, settings) as runner:
        # ---------------- host prerequisites ----------------
        typer.echo("\n[host] converging prerequisites...")
        host_report = HostPrerequisites(
            runner,
            host,
            bus=bus,
            event_ctx=event_ctx,
            pool_name=ctx.pool_name,
            pool_path=ctx.pool_path,
            require_bridge=settings.require_bridge,
        ).converge()

        for r in host_report.results:
            if r.advisory:
                typer.echo(f"  note: {r.name}: {r.advisory}")
        if not host_report.ok:
            for r in host_report.failures():
                if r.required:
                    typer.echo(f"  {r.name}: {r.status.value}: {r.detail}")
            fail("host prerequisites are not satisfied")

        # ---------------- registry ----------------
        registry = HostRegistry(ctx, kcli, bus=bus, event_ctx=event_ctx)
        registry.trust_host_key(runner, host.address)
        if host.password:
            registry.authorize_key(runner)
        client = registry.ensure_registered(host)
        scoped = KcliRunner(client=client)

        # ---------------- VIP plan ----------------
        try:
            plan = compute_plan(
                host.address,
                count,
                name_for=ctx.instance_name,
                vip_base=settings.vip_base,
                overrides=settings.vip_overrides,
            )
            if assume_yes:
                typer.echo(render_plan_table(plan))
            else:
                plan = confirm_plan(
                    plan,
                    confirm=typer.confirm,
                    prompt=lambda text, default: typer.prompt(text, default=default),
                    echo=typer.echo,
                )
            plan.validate(host.address, require_same_segment=settings.require_bridge)
        except VipPlanError as exc:
            fail(str(exc))
        bus.emit(VipPlanComputed(
            assignments=plan.as_dict(),
            overridden=[a.name for a in plan if a.overridden],
            **event_ctx,
        ))

        # ---------------- fan out ----------------
        cleanup = CleanupOrchestrator(ctx, scoped, runner, registered=True, bus=bus, event_ctx=event_ctx)
        executor = DeploymentExecutor(
            ctx,
            settings,
            scoped,
            cleanup,
            bridge_ready=host_report.bridge.ready,
            bus=bus,
            event_ctx=event_ctx,
        )
        typer.echo(f"\n[deploy] launching {count} installation(s) on {client}...")
        jobs = executor.launch_all(plan)
        if dry_run:
            typer.echo("[deploy] dry run: nothing was started")
            return
        for job in jobs:
            typer.echo(f"  {job.name}: {'pid ' + str(job.pid) if job.launched else job.launch_error}")
            if job.launched:
                typer.echo(f"    tail -f {job.log_path}")

        # ---------------- fan in ----------------
        typer.echo("\n[collect] waiting for installations (this can take 30-60 minutes)...")
        report = OutcomeCollector(
            ctx,
            settings,
            scoped,
            runner,
            sudo=host_report.facts.has_sudo,
            bus=bus,
            event_ctx=event_ctx,
        ).collect(jobs, wait_ready=wait)

    typer.echo("")
    typer.echo(render_summary(report, ctx))


# ------------------------------------------------------------------------------
# Cleanup
# ------------------------------------------------------------------------------

def cleanup_host(
    *,
    host: TargetHost,
    settings: Settings,
    assume_yes: bool,
    dry_run: bool,
    logger,
    run_id: str,
) -> None:
    ctx = ExecutionContext(
        host=host,
        scratch_root=settings.scratch_root,
        name_prefix=settings.name_prefix,
        dry_run=dry_run,
    )
    bus = build_bus(logger, run_id)
    event_ctx = new_ctx(env="cleanup", context=ctx.registry_name, run_id=run_id)

    if not assume_yes and not dry_run:
        if not typer.confirm(
            f"Remove every {ctx.name_prefix}-* cluster, VM, image and local state for {host.address}?"
        ):
            typer.echo("Aborted.")
            raise typer.Exit(0)

    local = KcliRunner()
    registered = HostRegistry(ctx, local).is_registered(ctx.registry_name)
    kcli = KcliRunner(client=ctx.registry_name) if registered else local

    runner: Optional[SSHRunner] = None
    try:
        runner = open_ssh(host, connect_timeout=settings.connect_timeout)
    except (HostConnectionError, AuthError) as exc:
        logger.warning("[cleanup] no SSH access (%s); remote images and volumes are skipped", exc)

    try:
        report = CleanupOrchestrator(
            ctx, kcli, runner, registered=registered, bus=bus, event_ctx=event_ctx
        ).run()
    finally:
        if runner is not None:
            runner.close()

    if report.nothing_to_clean:
        typer.echo("Nothing to clean.")
        return
    typer.echo(f"Removed {len(report.removed)} resource(s).")
    if report.remaining:
        typer.echo("Still present:")
        for label in report.remaining:
            typer.echo(f"  - {label}")


# ------------------------------------------------------------------------------
# Entry point
# ------------------------------------------------------------------------------

@app.command()
def main(
    host: str = typer.Argument(..., help="Hypervisor IP address"),
    login: Optional[str] = typer.Argument(None, help="SSH login"),
    credential: Optional[str] = typer.Argument(None, help="SSH password, or 'none' for key auth"),
    count: Optional[int] = typer.Argument(None, help="Number of clusters to create"),
    cleanup: bool = typer.Option(False, "--cleanup", help="Remove all clusters and state for HOST"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmations"),
    wait: bool = typer.Option(False, "--wait", help="Poll succeeded clusters until 'oc get nodes' answers"),
    dry_run: bool = typer.Option(False, "--dry-run"),
    config: Optional[Path] = typer.Option(None, "--config", help="Settings YAML"),
    debug: bool = typer.Option(False, "--debug"),
):
    if not is_dotted_quad(host):
        fail(f"invalid host address: {host}")
    if not cleanup:
        if not login or credential is None or count is None:
            fail("usage: snolab <host> <login> <credential|none> <count>")
        if count < 1:
            fail(f"count must be a positive integer, got {count}")

    secrets = [credential] if credential and credential.lower() != "none" else []
    logger, run_id, log_path = init_logging(verbose=debug, secrets=secrets)
    typer.echo(f"  Run ID   : {run_id}")
    typer.echo(f"  Logs     : {log_path}")

    settings = resolve_settings(config)
    target = TargetHost.from_cli(host, login, credential)

    try:
        if cleanup:
            cleanup_host(
                host=target, settings=settings, assume_yes=yes, dry_run=dry_run, logger=logger, run_id=run_id
            )
        else:
            provision(
                host=target,
                count=count,
                settings=settings,
                assume_yes=yes,
                wait=wait,
                dry_run=dry_run,
                logger=logger,
                run_id=run_id,
            )
    except (HostConnectionError, AuthError) as exc:
        logger.error("%s", exc)
        fail(str(exc))
    except ProvisionError as exc:
        logger.exception("run aborted")
        fail(str(exc))


if __name__ == "__main__":
    app()
