"""
CLI interface for stackctl.

Provides commands to elaborate a stack, run lifecycle verbs over it,
inspect its state and sync it to the control plane.

Every command raises StackError subclasses on failure; the command group
is the single place where errors become messages and exit codes.
"""

from dataclasses import replace
from pathlib import Path
from typing import Optional

import click

from stackctl import __version__
from stackctl.diagnostics import WarningCollector
from stackctl.errors import StackError, StateIOError
from stackctl.schemas import OsEnvironmentMode, Request
from stackctl.utils import parse_kv_list, print_error, print_info, print_success, setup_logging, split_paths


# =============================================================================
# Dispatcher
# =============================================================================


def _dispatch(ctx: click.Context, error: Optional[StackError]) -> None:
    """Print the error (if any), emit aggregated warnings, and exit with the mapped code."""
    warnings = (ctx.obj or {}).get("warnings")
    if error is not None:
        print_error(str(error))
    if warnings is not None:
        warnings.emit()
    if error is not None:
        ctx.exit(error.exit_code)


class StackctlGroup(click.Group):
    """Command group that maps StackError to exit codes."""

    def invoke(self, ctx: click.Context):
        try:
            result = super().invoke(ctx)
        except StackError as e:
            _dispatch(ctx, e)
            return None
        _dispatch(ctx, None)
        return result


def _kv_callback(ctx, param, value) -> dict[str, str]:
    merged: dict[str, str] = {}
    for item in value or ():
        try:
            merged.update(parse_kv_list(item))
        except ValueError as e:
            raise click.BadParameter(str(e))
    return merged


@click.group(cls=StackctlGroup)
@click.version_option(version=__version__, prog_name="stackctl")
@click.option("-v", "--verbose", is_flag=True, help="Print component banners and outputs")
@click.option("-d", "--debug", is_flag=True, help="Log expansion details")
@click.option("--trace", is_flag=True, help="Log raw outputs and every lookup")
@click.option("--config", "config_path", type=click.Path(path_type=Path), help="Path to config.yaml")
@click.pass_context
def main(ctx, verbose: bool, debug: bool, trace: bool, config_path: Optional[Path]):
    """
    stackctl - Stack lifecycle execution engine.

    Elaborate a stack manifest, then deploy, undeploy or back it up
    component by component with a resumable state file.
    """
    from stackctl.config import default_config, load_config

    ctx.ensure_object(dict)
    try:
        config = load_config(config_path)
    except FileNotFoundError:
        if config_path is not None:
            raise click.BadParameter(f"{config_path} not found", param_hint="--config")
        config = default_config()

    config = replace(
        config,
        verbose=verbose or config.verbose,
        debug=debug or config.debug,
        trace=trace or config.trace,
    )
    setup_logging(log_file=config.log_file, log_level=config.effective_log_level, log_format=config.log_format)
    ctx.obj["config"] = config
    ctx.obj["warnings"] = WarningCollector()


# =============================================================================
# Elaborate
# =============================================================================


@main.command("elaborate")
@click.argument("manifest", type=click.Path(path_type=Path))
@click.argument("params", nargs=-1, type=click.Path(path_type=Path))
@click.option("-e", "--environment", multiple=True, callback=_kv_callback, help="Overrides as K=V,K2=V2")
@click.option("-s", "--state", "state", help="Prior state file(s), comma-separated")
@click.option("-o", "--output", "output", help="Elaborate manifest file(s), comma-separated")
@click.option("-a", "--auto-resolve", is_flag=True, help="Expand unknown names to <name> instead of failing")
@click.option("--platform-provides", help="Capabilities provided by the platform, comma-separated")
@click.pass_context
def elaborate(ctx, manifest, params, environment, state, output, auto_resolve, platform_provides):
    """Merge parameters and write the elaborate manifest."""
    from stackctl.elaborate import Elaborator
    from stackctl.expressions import ExpressionEvaluator
    from stackctl.journal import load_state
    from stackctl.manifest import load_parameter_manifests, load_stack_manifest, write_manifest

    config = ctx.obj["config"]
    warnings = ctx.obj["warnings"]

    stack = load_stack_manifest(manifest)
    param_files = load_parameter_manifests(params)
    prior = None
    if state:
        try:
            prior = load_state(split_paths(state))
        except StateIOError as e:
            warnings.warn(f"{e}; elaborating without prior state")

    elaborator = Elaborator(
        config,
        warnings,
        evaluator=ExpressionEvaluator(auto_resolve=auto_resolve),
        platform_provides=split_paths(platform_provides),
    )
    elaborated = elaborator.elaborate(
        stack,
        param_files,
        state_derived=prior.stack_parameters if prior else (),
        env_overrides=environment,
        prior_provides=prior.provides.keys() if prior else (),
    )
    destinations = split_paths(output) or [config.elaborate_file]
    write_manifest(elaborated, destinations)
    print_success(f"Elaborated {stack.name} into {', '.join(destinations)}")


# =============================================================================
# Lifecycle verbs
# =============================================================================


def _lifecycle_options(f):
    options = [
        click.argument("elaborate_file", required=False, type=click.Path(path_type=Path)),
        click.option("-s", "--state", "state", help="State file(s), comma-separated"),
        click.option("-c", "--components", help="Run only these components, comma-separated"),
        click.option("-o", "--offset", help="Start at this component"),
        click.option("-l", "--limit", help="Stop after this component"),
        click.option("-g", "--guess", is_flag=True, help="Start at the first component not yet done"),
        click.option("-y", "--dry-run", is_flag=True, help="Run <verb>-test implementations"),
        click.option("-f", "--force", is_flag=True, help="Mark the rest skipped on failure, skip unresolvable components"),
        click.option(
            "--os-environment",
            type=click.Choice([m.value for m in OsEnvironmentMode]),
            help="OS environment passed to components",
        ),
        click.option("--hub-sync", type=click.Path(path_type=Path), help="Write the control-plane patch into this outbox"),
        click.option("--no-relay", is_flag=True, help="Capture component output without printing it"),
    ]
    for option in reversed(options):
        f = option(f)
    return f


def _run_lifecycle(ctx, verb: str, elaborate_file, state, components, offset, limit, guess, dry_run, force,
                   os_environment, hub_sync, no_relay):
    from stackctl.executor import LifecycleExecutor
    from stackctl.sync import DirectoryPatchSink

    config = ctx.obj["config"]
    warnings = ctx.obj["warnings"]
    try:
        request = Request(
            verb=verb,
            manifest_path=str(elaborate_file or config.elaborate_file),
            state_paths=tuple(split_paths(state) or [config.state_file]),
            components=tuple(split_paths(components)),
            offset=offset,
            limit=limit,
            guess_component=guess,
            dry_run=dry_run,
            force=force,
            os_environment_mode=OsEnvironmentMode(os_environment) if os_environment else config.os_environment_mode,
            relay_output=config.relay_output and not no_relay,
        )
    except ValueError as e:
        raise click.UsageError(str(e))

    sink = DirectoryPatchSink(hub_sync) if hub_sync else None
    executor = LifecycleExecutor(config, warnings, sink=sink)
    result = executor.execute(request)
    if not result.success:
        raise result.error

    label = f"{verb} (dry run)" if dry_run else verb
    print_success(f"Completed {label} of {result.state.name}: {len(result.executed)} component(s)")
    if result.skipped:
        print_info(f"Skipped: {', '.join(result.skipped)}")


@main.command("deploy")
@_lifecycle_options
@click.pass_context
def deploy(ctx, **options):
    """Deploy the stack, component by component."""
    _run_lifecycle(ctx, "deploy", **options)


@main.command("undeploy")
@_lifecycle_options
@click.pass_context
def undeploy(ctx, **options):
    """Undeploy the stack in reverse order."""
    _run_lifecycle(ctx, "undeploy", **options)


@main.command("backup")
@_lifecycle_options
@click.pass_context
def backup(ctx, **options):
    """Run the backup verb of every component that implements it."""
    _run_lifecycle(ctx, "backup", **options)


@main.command("invoke")
@click.argument("component")
@click.argument("verb")
@click.option("-m", "--manifest", "elaborate_file", type=click.Path(path_type=Path), help="Elaborate manifest")
@click.option("-s", "--state", "state", help="State file(s), comma-separated")
@click.pass_context
def invoke(ctx, component, verb, elaborate_file, state):
    """Run one verb of one component without touching the state."""
    from stackctl.executor import LifecycleExecutor

    config = ctx.obj["config"]
    executor = LifecycleExecutor(config, ctx.obj["warnings"])
    executor.invoke(
        str(elaborate_file or config.elaborate_file),
        component,
        verb,
        state_paths=split_paths(state) or [config.state_file],
        relay=True,
    )
    print_success(f"{component} {verb} completed")


# =============================================================================
# State
# =============================================================================


@main.command("explain")
@click.argument("state")
@click.option("--format", "fmt", type=click.Choice(["text", "json", "yaml"]), default="text", show_default=True)
@click.option("--op-log", is_flag=True, help="Show the operations log")
def explain(state, fmt, op_log):
    """Show parameters, outputs and component status recorded in a state file."""
    from stackctl.journal import explain_state, load_state

    paths = split_paths(state)
    loaded = load_state(paths)
    if loaded is None:
        raise StateIOError(f"No state found at {', '.join(paths)}")
    click.echo(explain_state(loaded, fmt=fmt, op_log=op_log), nl=False)


@main.command("sync")
@click.argument("state")
@click.option("--outbox", required=True, type=click.Path(path_type=Path), help="Directory receiving the patch")
def sync(state, outbox):
    """Write the control-plane patch of a state file."""
    from stackctl.journal import load_state
    from stackctl.sync import DirectoryPatchSink, transform_state_to_patch

    paths = split_paths(state)
    loaded = load_state(paths)
    if loaded is None:
        raise StateIOError(f"No state found at {', '.join(paths)}")
    sink = DirectoryPatchSink(outbox)
    patch = transform_state_to_patch(loaded)
    sink.send(patch)
    print_success(f"Wrote {sink.path_for(patch)}")


# =============================================================================
# Expressions
# =============================================================================


@main.command("eval")
@click.argument("template")
@click.argument("bindings", required=False)
@click.option("-a", "--auto-resolve", is_flag=True, help="Expand unknown names to <name>")
def eval_template(template, bindings, auto_resolve):
    """Expand a template with K=V,... bindings."""
    from stackctl.expressions import Bindings, ExpressionEvaluator

    try:
        values = parse_kv_list(bindings)
    except ValueError as e:
        raise click.BadParameter(str(e), param_hint="BINDINGS")
    evaluator = ExpressionEvaluator(auto_resolve=auto_resolve)
    click.echo(evaluator.expand(template, Bindings(values)))


if __name__ == "__main__":
    main()
