"""Command-line interface router for agentforge."""

from __future__ import annotations

import argparse
import asyncio
import json
import os
import shutil
import signal
import sys
from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Final

import yaml

from agentforge.compilation import (
    CompilationOrchestrator,
    LocalBuilder,
    LocalBuildUnavailableError,
    StatusPoller,
    build_spec_from_ui_config,
)
from agentforge.compilation.local_builder import SERVERLESS_MARKERS
from agentforge.compilation.request import parse_platform
from agentforge.config import (
    ConfigLoadError,
    ConfigValidationError,
    effective_config,
    load_config,
)
from agentforge.credentials import CredentialStore, MissingCredentialsError
from agentforge.domain.ids import generate_run_id
from agentforge.domain.models import (
    AgentBuildSpec,
    BuildMethod,
    BuildTarget,
    CompilationJob,
    Credential,
    CredentialSource,
    CredentialType,
    FailureKind,
    JobStatus,
    ModelProviderSelection,
)
from agentforge.inference import InferenceRouter
from agentforge.main import ExitCode
from agentforge.observability import EventBus, setup_logging, shutdown_logging
from agentforge.runtime import DEFAULT_RUNTIME_PORT, ToolRegistry, create_runtime_app, serve_runtime
from agentforge.ui.render import CLIRenderer, create_renderer
from agentforge.utils.concurrency import CancellationToken, run_with_timeout

SPEC_SUFFIXES_YAML: Final[frozenset[str]] = frozenset({".yaml", ".yml"})


@dataclass(frozen=True, slots=True)
class CLIError(RuntimeError):
    """Typed CLI failure with an explicit process exit code."""

    message: str
    exit_code: int = 1

    def __str__(self) -> str:
        return self.message


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    """Build the argparse command router for all supported CLI workflows."""

    parser = argparse.ArgumentParser(
        prog="agentforge",
        description=(
            "agentforge — compile declaratively configured agents and run them sandboxed.\n\n"
            "Common workflows:\n"
            "  agentforge build agent.yaml           Compile an agent (local or CI)\n"
            "  agentforge wait JOB --spec agent.yaml Follow a remote build to the end\n"
            "  agentforge credentials check          Report unresolved credentials\n"
            "  agentforge doctor                     Check environment health\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--config",
        dest="config_path",
        default=None,
        help="Path to agentforge TOML config (default: ./agentforge.toml if present).",
    )
    common.add_argument(
        "--profile",
        default=None,
        help="Optional config profile overlay name (local, serverless, strict).",
    )
    common.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        default=False,
        help="Show detailed output.",
    )
    common.add_argument(
        "--no-color",
        action="store_true",
        default=False,
        help="Disable colored output (also respects NO_COLOR env var).",
    )
    common.add_argument("--json", action="store_true", help="Emit deterministic JSON output")

    subparsers = parser.add_subparsers(dest="command", required=True)

    # build ---------------------------------------------------------------
    build_parser_ = subparsers.add_parser(
        "build",
        parents=[common],
        help="Compile an agent from a build spec",
        description=(
            "Submit a build spec (JSON or YAML). The build runs locally when the Go\n"
            "toolchain is usable and falls back to the CI workflow otherwise.\n\n"
            "Examples:\n"
            "  agentforge build agent.yaml\n"
            "  agentforge build ui.json --ui-config --platform darwin --target go\n"
            "  agentforge build agent.yaml --no-wait --json\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    build_parser_.add_argument("spec_path", help="Path to the agent build spec")
    build_parser_.add_argument(
        "--ui-config",
        action="store_true",
        help="Treat the file as a UI payload ({config, advancedSettings, platform})",
    )
    build_parser_.add_argument("--platform", default=None, help="linux, darwin or windows")
    build_parser_.add_argument("--target", default=None, help="wasm or go")
    build_parser_.add_argument(
        "--no-wait",
        action="store_true",
        help="Return after a remote dispatch instead of polling it",
    )
    _add_poll_arguments(build_parser_)
    build_parser_.set_defaults(handler=_cmd_build)

    # status --------------------------------------------------------------
    status_parser = subparsers.add_parser(
        "status",
        parents=[common],
        help="Query a remote job once",
        description=(
            "Derive the current status of a CI-dispatched job.\n\n"
            "Examples:\n"
            "  agentforge status compile-1700000000000-abc123xyz --spec agent.yaml\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    status_parser.add_argument("job_id", help="Job id returned by 'agentforge build'")
    status_parser.add_argument("--spec", dest="spec_path", required=True, help="Build spec file")
    status_parser.add_argument("--ui-config", action="store_true", help="Spec is a UI payload")
    status_parser.set_defaults(handler=_cmd_status)

    # wait ----------------------------------------------------------------
    wait_parser = subparsers.add_parser(
        "wait",
        parents=[common],
        help="Poll a remote job until it completes or fails",
        description=(
            "Poll a CI-dispatched job at a fixed interval until it is terminal.\n\n"
            "Examples:\n"
            "  agentforge wait compile-1700000000000-abc123xyz --spec agent.yaml\n"
            "  agentforge wait JOB --spec agent.yaml --interval 10 --max-attempts 30\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    wait_parser.add_argument("job_id", help="Job id returned by 'agentforge build'")
    wait_parser.add_argument("--spec", dest="spec_path", required=True, help="Build spec file")
    wait_parser.add_argument("--ui-config", action="store_true", help="Spec is a UI payload")
    _add_poll_arguments(wait_parser)
    wait_parser.set_defaults(handler=_cmd_wait)

    # credentials ---------------------------------------------------------
    credentials_parser = subparsers.add_parser(
        "credentials",
        parents=[common],
        help="Manage credential declarations (values are never stored)",
        description=(
            "List, check, add or remove credential declarations.\n\n"
            "Examples:\n"
            "  agentforge credentials list\n"
            "  agentforge credentials check\n"
            "  agentforge credentials add openai_api_key --source env --reference OPENAI_API_KEY\n"
            "  agentforge credentials remove openai_api_key\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    credentials_parser.add_argument(
        "action", choices=("list", "check", "add", "remove"), help="Operation"
    )
    credentials_parser.add_argument("name", nargs="?", default=None, help="Credential name")
    credentials_parser.add_argument(
        "--type",
        dest="credential_type",
        default=CredentialType.API_KEY.value,
        choices=tuple(item.value for item in CredentialType),
    )
    credentials_parser.add_argument(
        "--source",
        default=CredentialSource.ENV.value,
        choices=tuple(
            item.value for item in CredentialSource if item is not CredentialSource.CONFIG
        ),
    )
    credentials_parser.add_argument("--reference", default="", help="Env var, file or item")
    credentials_parser.add_argument("--description", default="")
    credentials_parser.add_argument("--optional", action="store_true")
    credentials_parser.add_argument(
        "--spec",
        dest="spec_path",
        default=None,
        help="Also check the credentials declared by this build spec",
    )
    credentials_parser.set_defaults(handler=_cmd_credentials)

    # infer ---------------------------------------------------------------
    infer_parser = subparsers.add_parser(
        "infer",
        parents=[common],
        help="Send one prompt through the inference router",
        description=(
            "Examples:\n"
            "  agentforge infer 'Summarize this' --provider anthropic --model claude-3-haiku\n"
            "  agentforge infer 'Hello' --system 'Be brief' --json\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    infer_parser.add_argument("prompt", help="User message")
    infer_parser.add_argument("--system", default=None, help="System prompt")
    infer_parser.add_argument("--provider", default=None, help="Provider id (config default)")
    infer_parser.add_argument("--model", default=None, help="Model id (config default)")
    infer_parser.add_argument("--endpoint", default=None, help="Endpoint override")
    infer_parser.add_argument("--temperature", type=float, default=None)
    infer_parser.add_argument("--max-tokens", type=int, default=None)
    infer_parser.add_argument("--top-p", type=float, default=None)
    infer_parser.set_defaults(handler=_cmd_infer)

    # serve ---------------------------------------------------------------
    serve_parser = subparsers.add_parser(
        "serve",
        parents=[common],
        help="Serve an agent's tools and model on a loopback port",
        description=(
            "Examples:\n"
            "  agentforge serve agent.yaml\n"
            "  agentforge serve agent.yaml --port 9000\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    serve_parser.add_argument("spec_path", help="Path to the agent build spec")
    serve_parser.add_argument("--ui-config", action="store_true", help="Spec is a UI payload")
    serve_parser.add_argument("--host", default="127.0.0.1", help="Loopback address")
    serve_parser.add_argument("--port", type=int, default=DEFAULT_RUNTIME_PORT)
    serve_parser.set_defaults(handler=_cmd_serve)

    # doctor --------------------------------------------------------------
    doctor_parser = subparsers.add_parser(
        "doctor",
        parents=[common],
        help="Run offline diagnostics and check environment health",
        description=(
            "Check config, Go toolchain, CI settings, sandbox runtimes and credentials.\n\n"
            "Examples:\n"
            "  agentforge doctor\n"
            "  agentforge doctor --json\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    doctor_parser.set_defaults(handler=_cmd_doctor)

    # config --------------------------------------------------------------
    config_parser = subparsers.add_parser(
        "config",
        parents=[common],
        help="Show effective configuration (redacted)",
        description=(
            "Display the effective config after merging defaults, file, env, and profile.\n\n"
            "Examples:\n"
            "  agentforge config\n"
            "  agentforge config --profile strict --json\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    config_parser.set_defaults(handler=_cmd_config)

    return parser


def _add_poll_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--interval", type=float, default=None, help="Seconds between status queries"
    )
    parser.add_argument(
        "--max-attempts", type=int, default=None, help="Status queries before giving up"
    )


# ---------------------------------------------------------------------------
# Entrypoints
# ---------------------------------------------------------------------------


def run_cli(argv: Sequence[str] | None = None) -> int:
    """Parse argv, route to a command handler, and return process exit code."""

    parser = build_parser()
    namespace = parser.parse_args(list(argv) if argv is not None else None)
    handler = getattr(namespace, "handler", None)
    if not callable(handler):
        parser.print_help(sys.stderr)
        return int(ExitCode.CONFIG_ERROR)

    try:
        result = handler(namespace)
    except CLIError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return exc.exit_code
    return int(result)


def main(argv: Sequence[str] | None = None) -> int:
    return run_cli(argv)


# ---------------------------------------------------------------------------
# Command handlers
# ---------------------------------------------------------------------------


def _cmd_build(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    spec = _load_build_spec(args)
    with _logging_scope(config):
        job = asyncio.run(_build(args, config, spec))
    return _report_job(args, job, command="build")


async def _build(
    args: argparse.Namespace, config: Mapping[str, Any], spec: AgentBuildSpec
) -> CompilationJob:
    renderer = _get_renderer(args)
    bus = EventBus()
    if not _flag(args, "json"):
        bus.subscribe(None, renderer.progress)
    async with CompilationOrchestrator.from_config(config, publisher=bus) as orchestrator:
        job_id = await orchestrator.submit(spec)
        await orchestrator.wait_local(job_id)
        job = await orchestrator.get_status(job_id)
        if job.method is BuildMethod.REMOTE and not job.status.is_terminal:
            if _flag(args, "no_wait"):
                return job
            job = await _poll(args, config, orchestrator, job_id, renderer)
        return job


def _cmd_status(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    spec = _load_build_spec(args)
    job_id = _require_str(getattr(args, "job_id", None), "job_id")

    async def query() -> CompilationJob:
        async with CompilationOrchestrator.from_config(config) as orchestrator:
            await orchestrator.track_remote(spec, job_id)
            return await orchestrator.get_status(job_id)

    with _logging_scope(config):
        job = asyncio.run(query())
    return _report_job(args, job, command="status")


def _cmd_wait(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    spec = _load_build_spec(args)
    job_id = _require_str(getattr(args, "job_id", None), "job_id")
    renderer = _get_renderer(args)

    async def follow() -> CompilationJob:
        async with CompilationOrchestrator.from_config(config) as orchestrator:
            await orchestrator.track_remote(spec, job_id)
            return await _poll(args, config, orchestrator, job_id, renderer)

    with _logging_scope(config):
        job = asyncio.run(follow())
    return _report_job(args, job, command="wait")


async def _poll(
    args: argparse.Namespace,
    config: Mapping[str, Any],
    orchestrator: CompilationOrchestrator,
    job_id: str,
    renderer: CLIRenderer,
) -> CompilationJob:
    section = config["orchestrator"]
    interval = getattr(args, "interval", None)
    attempts = getattr(args, "max_attempts", None)
    last_status: list[JobStatus] = []

    def on_update(job: CompilationJob) -> None:
        if _flag(args, "json") or (last_status and last_status[-1] is job.status):
            return
        last_status.append(job.status)
        renderer.kv("status", job.status.value)

    poller = StatusPoller(
        orchestrator.get_status,
        interval_seconds=float(section["poll_interval_seconds"] if interval is None else interval),
        max_attempts=int(section["poll_max_attempts"] if attempts is None else attempts),
        on_update=on_update,
    )
    token = CancellationToken()
    loop = asyncio.get_running_loop()
    installed = _install_interrupt(loop, token)
    try:
        result = await run_with_timeout(
            poller.wait(job_id, cancel_token=token),
            float(section["wait_timeout_seconds"]),
            token,
        )
    except asyncio.CancelledError:
        if not token.is_cancelled:
            raise
        raise CLIError(
            f"stopped waiting for {job_id}; the build keeps running",
            exit_code=int(ExitCode.TIMEOUT),
        ) from None
    finally:
        if installed:
            loop.remove_signal_handler(signal.SIGINT)
    return result.job


def _cmd_credentials(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    action = _require_str(getattr(args, "action", None), "action")
    with _logging_scope(config):
        store = _credential_store(config)
        store.load()
        if action == "add":
            name = _require_name(args)
            view = store.add(
                Credential(
                    name=name,
                    type=args.credential_type,
                    source=args.source,
                    reference=args.reference,
                    description=args.description,
                    optional=bool(args.optional),
                )
            )
            payload: dict[str, object] = {"command": "credentials", "action": "add", **view}
        elif action == "remove":
            name = _require_name(args)
            if not store.remove(name):
                raise CLIError(f"credential {name!r} is not declared", exit_code=2)
            payload = {"command": "credentials", "action": "remove", "name": name}
        else:
            spec_path = _optional_str(getattr(args, "spec_path", None))
            if spec_path is not None:
                store.add_all(_load_build_spec(args).credentials, persist=False)
            payload = {
                "command": "credentials",
                "action": action,
                "credentials": list(store.list()),
                "missing": list(store.missing()),
            }

    if _flag(args, "json"):
        _emit_json(payload)
    else:
        _render_credentials(_get_renderer(args), action, payload)
    if action == "check":
        try:
            store.validate_all()
        except MissingCredentialsError as exc:
            if not _flag(args, "json"):
                _get_renderer(args).error(str(exc))
            return int(ExitCode.CONFIG_ERROR)
    return int(ExitCode.SUCCESS)


def _cmd_infer(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    section = config["inference"]
    selection = ModelProviderSelection(
        provider=_optional_str(getattr(args, "provider", None)) or section["default_provider"],
        model=_optional_str(getattr(args, "model", None)) or section["default_model"],
        endpoint=_optional_str(getattr(args, "endpoint", None)),
    )
    messages: list[dict[str, str]] = []
    system = _optional_str(getattr(args, "system", None))
    if system:
        messages.append({"role": "system", "content": system})
    messages.append({"role": "user", "content": _require_str(args.prompt, "prompt")})

    with _logging_scope(config):
        store = _credential_store(config)
        store.load()
        router = InferenceRouter.from_selection(
            selection, inference_config=section, credentials=store
        )
        response = asyncio.run(
            router.generate(
                messages,
                temperature=args.temperature,
                max_tokens=args.max_tokens,
                top_p=args.top_p,
            )
        )

    if _flag(args, "json"):
        _emit_json({"command": "infer", **response.to_dict()})
        return int(ExitCode.SUCCESS)
    renderer = _get_renderer(args)
    renderer.text(response.text)
    if renderer.verbose:
        renderer.kv("finish_reason", response.finish_reason)
        renderer.kv("usage", json.dumps(response.usage.to_dict(), sort_keys=True))
    return int(ExitCode.SUCCESS)


def _cmd_serve(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    spec = _load_build_spec(args)
    with _logging_scope(config):
        store = _credential_store(config)
        store.load()
        store.add_all(spec.credentials, persist=False)
        registry = ToolRegistry.from_spec(spec)
        router = InferenceRouter.from_selection(
            spec.model_provider, inference_config=config["inference"], credentials=store
        )
        app = create_runtime_app(registry, router, agent_name=spec.slug)
        renderer = _get_renderer(args)
        renderer.kv("Serving", f"http://{args.host}:{args.port}")
        renderer.kv("Tools", ", ".join(registry.names) or "(none)")
        serve_runtime(app, host=args.host, port=args.port)
    return int(ExitCode.SUCCESS)


def _cmd_doctor(args: argparse.Namespace) -> int:
    checks: list[tuple[str, bool, str]] = []

    # 1. Config check
    config: dict[str, Any] | None = None
    try:
        config = _load_effective_config(args)
        checks.append(("config", True, "loaded successfully"))
    except CLIError as exc:
        checks.append(("config", False, str(exc)))

    if config is not None:
        orchestrator = config["orchestrator"]
        # 2. Local build path
        builder = LocalBuilder(
            orchestrator["output_dir"],
            go_binary=orchestrator["go_binary"],
            enabled=bool(orchestrator["local_build_enabled"]),
        )
        try:
            go = builder.check_available()
            checks.append(("local_build", True, f"go found at {go}"))
        except LocalBuildUnavailableError as exc:
            checks.append(("local_build", True, f"unavailable, CI fallback applies ({exc.reason})"))

        # 3. Remote build path
        ci = config["ci"]
        token_env = str(ci["token_env"])
        if not (ci["owner"] and ci["repo"]):
            checks.append(("ci", True, "not configured (set ci.owner and ci.repo)"))
        elif not os.environ.get(token_env, "").strip():
            checks.append(("ci", False, f"{ci['owner']}/{ci['repo']}: {token_env} is not set"))
        else:
            checks.append(("ci", True, f"{ci['owner']}/{ci['repo']} via {ci['workflow']}"))

        # 4. Sandbox runtimes
        tee = config["tee"]
        for key in ("container_runtime", "vm_runtime"):
            runtime = str(tee.get(key) or "")
            if not runtime:
                checks.append((f"tee:{key}", True, "not configured (process fallback)"))
            elif shutil.which(runtime.split()[0]) is None:
                checks.append((f"tee:{key}", False, f"{runtime!r} not found in PATH"))
            else:
                checks.append((f"tee:{key}", True, runtime))

        # 5. Credentials
        try:
            store = _credential_store(config)
            count = store.load()
            missing = store.missing()
            detail = f"{count} declared" + (f", missing: {', '.join(missing)}" if missing else "")
            checks.append(("credentials", not missing, detail))
        except Exception as exc:  # noqa: BLE001 - doctor must never crash
            checks.append(("credentials", False, str(exc)))

        # 6. Provider keys (optional)
        for provider, env_name in sorted(config["inference"]["api_key_envs"].items()):
            state = "set" if os.environ.get(env_name, "").strip() else "not set (optional)"
            checks.append((f"provider:{provider}", True, f"{env_name} {state}"))
    else:
        checks.append(("local_build", False, "skipped (config failed)"))

    markers = [name for name in SERVERLESS_MARKERS if os.environ.get(name)]
    if markers:
        checks.append(("environment", True, f"serverless ({', '.join(markers)})"))

    checks_payload: list[dict[str, object]] = [
        {"name": name, "status": "ok" if passed else "fail", "detail": detail}
        for name, passed, detail in checks
    ]
    payload: dict[str, object] = {"command": "doctor", "checks": checks_payload}

    if _flag(args, "json"):
        _emit_json(payload)
        return 0

    renderer = _get_renderer(args)
    renderer.heading("agentforge doctor")
    for name, passed, detail in checks:
        if passed:
            renderer.ok(f"{name}: {detail}")
        else:
            renderer.fail(f"{name}: {detail}")

    if all(passed for _, passed, _ in checks):
        renderer.text("\nAll checks passed.")
    else:
        renderer.text("\nSome checks failed. See details above.")
    return 0


def _cmd_config(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    profile = _optional_str(getattr(args, "profile", None))
    redacted = effective_config(config)

    payload: dict[str, object] = {
        "command": "config",
        "active_profile": profile,
        "config": redacted,
    }

    if _flag(args, "json"):
        _emit_json(payload)
        return 0

    renderer = _get_renderer(args)
    renderer.kv("Active profile", profile or "(default)")
    renderer.text(json.dumps(redacted, indent=2, sort_keys=True, ensure_ascii=False))
    return 0


# ---------------------------------------------------------------------------
# Rendering helpers
# ---------------------------------------------------------------------------


def _emit_json(payload: Mapping[str, object]) -> None:
    """Emit a JSON payload to stdout with deterministic formatting."""

    print(json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False))


def _get_renderer(args: argparse.Namespace) -> CLIRenderer:
    return create_renderer(no_color=_flag(args, "no_color"), verbose=_flag(args, "verbose"))


def _report_job(args: argparse.Namespace, job: CompilationJob, *, command: str) -> int:
    exit_code = _job_exit_code(job)
    if _flag(args, "json"):
        _emit_json({"command": command, **job.to_status_dict()})
        return exit_code

    renderer = _get_renderer(args)
    renderer.section("Compilation job")
    renderer.job(job)
    if job.method is BuildMethod.REMOTE and not job.status.is_terminal:
        spec_path = _optional_str(getattr(args, "spec_path", None)) or "<spec>"
        renderer.next_steps([f"agentforge wait {job.job_id} --spec {spec_path}"])
    return exit_code


def _job_exit_code(job: CompilationJob) -> int:
    if job.status is not JobStatus.FAILED:
        return int(ExitCode.SUCCESS)
    if job.failure_kind is FailureKind.DISPATCH:
        return int(ExitCode.PROVIDER_ERROR)
    if job.failure_kind is FailureKind.TIMEOUT:
        return int(ExitCode.TIMEOUT)
    return int(ExitCode.BUILD_FAILED)


def _render_credentials(
    renderer: CLIRenderer, action: str, payload: Mapping[str, object]
) -> None:
    if action == "add":
        renderer.text(f"declared credential {payload['name']} ({payload['source']})")
        return
    if action == "remove":
        renderer.text(f"removed credential {payload['name']}")
        return
    credentials = payload.get("credentials")
    missing = payload.get("missing")
    missing_names = set(missing) if isinstance(missing, list) else set()
    entries = credentials if isinstance(credentials, list) else []
    rows = [
        [
            str(item["name"]),
            str(item["type"]),
            str(item["source"]),
            str(item["reference"]),
            "missing" if item["name"] in missing_names else "ok",
        ]
        for item in entries
    ]
    if not rows:
        renderer.text("no credentials declared")
        return
    renderer.table(("name", "type", "source", "reference", "state"), rows, title="Credentials")


# ---------------------------------------------------------------------------
# Helpers: config, specs, stores
# ---------------------------------------------------------------------------


def _load_effective_config(args: argparse.Namespace) -> dict[str, Any]:
    config_path = _optional_str(getattr(args, "config_path", None))
    profile = _optional_str(getattr(args, "profile", None))

    try:
        loaded = load_config(config_path, profile=profile)
    except (ConfigLoadError, ConfigValidationError) as exc:
        raise CLIError(str(exc), exit_code=2) from exc

    return {key: value for key, value in loaded.items()}


def _load_build_spec(args: argparse.Namespace) -> AgentBuildSpec:
    path = Path(_require_str(getattr(args, "spec_path", None), "spec_path")).expanduser()
    if not path.is_file():
        raise CLIError(f"spec file not found: {path}", exit_code=2)
    try:
        text = path.read_text(encoding="utf-8")
        if path.suffix.lower() in SPEC_SUFFIXES_YAML:
            payload = yaml.safe_load(text)
        else:
            payload = json.loads(text)
    except (OSError, ValueError, yaml.YAMLError) as exc:
        raise CLIError(f"unable to read spec file {path}: {exc}", exit_code=2) from exc
    if not isinstance(payload, dict):
        raise CLIError(f"spec file {path} must contain an object", exit_code=2)

    platform = _optional_str(getattr(args, "platform", None))
    target = _optional_str(getattr(args, "target", None))
    if _flag(args, "ui_config"):
        ui_config = payload.get("config", payload)
        return build_spec_from_ui_config(
            ui_config,
            payload.get("advancedSettings"),
            platform or payload.get("platform"),
            build_target=target or payload.get("buildTarget"),
        )

    spec = AgentBuildSpec.from_dict(payload)
    if platform is not None:
        spec = replace(spec, platform=parse_platform(platform))
    if target is not None:
        spec = replace(spec, build_target=BuildTarget.parse(target))
    spec.validate()
    return spec


def _credential_store(config: Mapping[str, Any]) -> CredentialStore:
    section = config["credentials"]
    return CredentialStore(
        section["store_path"], keychain_service=str(section["keychain_service"])
    )


@contextmanager
def _logging_scope(config: Mapping[str, Any]) -> Iterator[None]:
    """Run-scoped JSON-lines logging for one command."""

    handle = setup_logging(config["observability"], run_id=generate_run_id())
    try:
        yield
    finally:
        shutdown_logging(handle)


def _install_interrupt(loop: asyncio.AbstractEventLoop, token: CancellationToken) -> bool:
    try:
        loop.add_signal_handler(signal.SIGINT, token.cancel)
    except (NotImplementedError, RuntimeError):
        # Windows event loops and non-main threads have no signal handlers.
        return False
    return True


def _require_str(value: object, name: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise CLIError(f"missing required argument: {name}", exit_code=2)
    return value.strip()


def _require_name(args: argparse.Namespace) -> str:
    return _require_str(getattr(args, "name", None), "name")


def _optional_str(value: object) -> str | None:
    if not isinstance(value, str):
        return None
    stripped = value.strip()
    return stripped or None


def _flag(args: argparse.Namespace, name: str) -> bool:
    return bool(getattr(args, name, False))


__all__ = ["CLIError", "build_parser", "main", "run_cli"]
