"""Unit test fixtures for bundle-pipeline.

Unit tests:
- Run without platform instances or network access
- Talk to in-memory FakeInstance objects through httpx.MockTransport, so the
  real EnvironmentClient, BundleManager and orchestrator code paths execute
- Use a stub validation runner whose outcome each test chooses

Key Fixtures:
- platform: dev/staging/prod fakes; staging and prod serve PREVIOUS_BUNDLE
- pipeline_config: PipelineConfig pointing at the fakes, with lock and
  history files under tmp_path
- clients: EnvironmentClient per environment wired to the fakes
- validation_runner: StubValidationRunner (passes unless told otherwise)
- make_orchestrator: factory for DeploymentOrchestrator instances
"""

from __future__ import annotations

import itertools
import json
import re
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import httpx
import pytest

from bundle_pipeline.client.environment import EnvironmentClient
from bundle_pipeline.orchestrator import DeploymentOrchestrator
from bundle_pipeline.schemas.config import (
    EnvironmentConfig,
    EnvironmentName,
    PipelineConfig,
    RetryConfig,
)
from bundle_pipeline.sync import CIContextGitRemote
from bundle_pipeline.validation import ValidationRunner

PROJECT_KEY = "CHURN"
PREVIOUS_BUNDLE = "bundle-1b2c3d4e5f60"

# Operations that read or change bundles
BUNDLE_OPERATIONS = frozenset(
    {
        "list_exported",
        "export",
        "archive",
        "publish",
        "list_imported",
        "import",
        "activate",
        "settings_get",
        "settings_put",
        "update",
    }
)

_PROJECT = r"^/public/api/projects/(?P<key>[^/]+)"
_DEPLOYMENT = r"^/public/api/project-deployer/deployments/(?P<deployment_id>[^/]+)"
_FILENAME = re.compile(rb'filename="(?P<name>[^"]+)\.zip"')


class FakeInstance:
    """In-memory platform instance served through httpx.MockTransport.

    Attributes:
        commit: Latest commit of the project's internal Git history.
        push_success: What the push endpoint reports.
        exported: Exported bundle archives by id (dev).
        imported: Imported bundles by id, in the platform's list format.
        deployments: Deployer deployments (dev), each with settings and target.
        scenario_outcome: Outcome reported for scenario runs (None = running).
        concurrent_scenario_runs: Runs by other callers that start right after
            each triggered run.
        update_result: Body of the deployment update answer; a failed update
            leaves the target untouched.
        faults: Operation name -> HTTP status to answer with instead.
        calls: Operation names in the order they were requested.
    """

    def __init__(self, name: str, project_key: str = PROJECT_KEY) -> None:
        self.name = name
        self.projects = {project_key}
        self.commit: str | None = None
        self.push_success = True
        self.pushes = 0
        self.exported: dict[str, bytes] = {}
        self.published: set[str] = set()
        self.imported: dict[str, dict[str, Any]] = {}
        self.deployments: dict[str, dict[str, Any]] = {}
        self.scenario_outcome: str | None = "SUCCESS"
        self.scenario_runs: list[dict[str, Any]] = []
        self.concurrent_scenario_runs = 0
        self.update_result: dict[str, Any] = {"failed": False}
        self.faults: dict[str, int] = {}
        self.calls: list[str] = []
        self._clock = itertools.count(1)
        self._routes: list[tuple[str, re.Pattern[str], str, Callable[..., httpx.Response]]] = [
            ("GET", re.compile(_PROJECT + r"/$"), "project", self._get_project),
            ("GET", re.compile(_PROJECT + r"/git/log$"), "git_log", self._git_log),
            ("POST", re.compile(_PROJECT + r"/git/actions/push$"), "push", self._push),
            ("GET", re.compile(_PROJECT + r"/bundles/exported$"), "list_exported", self._list_exported),
            (
                "GET",
                re.compile(_PROJECT + r"/bundles/exported/(?P<bundle_id>[^/]+)/archive$"),
                "archive",
                self._archive,
            ),
            (
                "POST",
                re.compile(_PROJECT + r"/bundles/exported/(?P<bundle_id>[^/]+)/actions/publish$"),
                "publish",
                self._publish,
            ),
            (
                "PUT",
                re.compile(_PROJECT + r"/bundles/exported/(?P<bundle_id>[^/]+)$"),
                "export",
                self._export,
            ),
            ("GET", re.compile(_PROJECT + r"/bundles/imported$"), "list_imported", self._list_imported),
            (
                "POST",
                re.compile(_PROJECT + r"/bundles/imported/actions/importFromStream$"),
                "import",
                self._import,
            ),
            (
                "POST",
                re.compile(_PROJECT + r"/bundles/imported/(?P<bundle_id>[^/]+)/actions/activate$"),
                "activate",
                self._activate,
            ),
            (
                "POST",
                re.compile(_PROJECT + r"/scenarios/(?P<scenario_id>[^/]+)/run$"),
                "scenario_run",
                self._scenario_run,
            ),
            (
                "GET",
                re.compile(_PROJECT + r"/scenarios/(?P<scenario_id>[^/]+)/get-last-runs$"),
                "scenario_last_runs",
                self._scenario_last_runs,
            ),
            ("GET", re.compile(_DEPLOYMENT + r"/settings$"), "settings_get", self._settings_get),
            ("PUT", re.compile(_DEPLOYMENT + r"/settings$"), "settings_put", self._settings_put),
            ("POST", re.compile(_DEPLOYMENT + r"/actions/update$"), "update", self._update),
        ]

    def __repr__(self) -> str:
        return f"FakeInstance({self.name!r})"

    # -- state helpers -------------------------------------------------

    @property
    def active_bundle_id(self) -> str | None:
        activated = [b for b in self.imported.values() if b.get("activatedOn")]
        if not activated:
            return None
        return str(max(activated, key=lambda b: b["activatedOn"])["bundleId"])

    def add_imported(self, bundle_id: str) -> None:
        self.imported.setdefault(
            bundle_id, {"bundleId": bundle_id, "importedOn": next(self._clock)}
        )

    def activate(self, bundle_id: str) -> None:
        self.imported[bundle_id]["activatedOn"] = next(self._clock)

    def seed_active(self, bundle_id: str) -> None:
        self.add_imported(bundle_id)
        self.activate(bundle_id)

    def bundle_calls(self) -> list[str]:
        return [c for c in self.calls if c in BUNDLE_OPERATIONS]

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    # -- dispatch ------------------------------------------------------

    def handler(self, request: httpx.Request) -> httpx.Response:
        request.read()
        for method, pattern, op, handle in self._routes:
            if request.method != method:
                continue
            match = pattern.match(request.url.path)
            if match is None:
                continue
            self.calls.append(op)
            if op in self.faults:
                return httpx.Response(self.faults[op], json={"message": f"injected {op} failure"})
            params = match.groupdict()
            key = params.pop("key", None)
            if key is not None and key not in self.projects:
                return httpx.Response(404, json={"message": f"project {key} not found"})
            return handle(request, **params)
        return httpx.Response(404, json={"message": "no such endpoint"})

    # -- handlers ------------------------------------------------------

    def _get_project(self, request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"projectKey": next(iter(self.projects))})

    def _git_log(self, request: httpx.Request) -> httpx.Response:
        entries = [{"commit": self.commit}] if self.commit else []
        return httpx.Response(200, json={"entries": entries})

    def _push(self, request: httpx.Request) -> httpx.Response:
        self.pushes += 1
        if self.push_success:
            return httpx.Response(200, json={"success": True, "output": "Everything up-to-date"})
        return httpx.Response(200, json={"success": False, "output": "rejected: non-fast-forward"})

    def _list_exported(self, request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"bundles": [{"bundleId": b} for b in self.exported]})

    def _export(self, request: httpx.Request, bundle_id: str) -> httpx.Response:
        self.exported[bundle_id] = f"archive:{bundle_id}".encode()
        return httpx.Response(200, json={"bundleId": bundle_id})

    def _archive(self, request: httpx.Request, bundle_id: str) -> httpx.Response:
        if bundle_id not in self.exported:
            return httpx.Response(404, json={"message": "bundle not found"})
        return httpx.Response(200, content=self.exported[bundle_id])

    def _publish(self, request: httpx.Request, bundle_id: str) -> httpx.Response:
        if bundle_id not in self.exported:
            return httpx.Response(404, json={"message": "bundle not found"})
        if bundle_id in self.published:
            return httpx.Response(409, json={"message": "already published"})
        self.published.add(bundle_id)
        return httpx.Response(200, json={})

    def _list_imported(self, request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"bundles": list(self.imported.values())})

    def _import(self, request: httpx.Request) -> httpx.Response:
        match = _FILENAME.search(request.content)
        if match is None:
            return httpx.Response(400, json={"message": "no archive"})
        bundle_id = match.group("name").decode()
        self.add_imported(bundle_id)
        return httpx.Response(200, json={"bundleId": bundle_id})

    def _activate(self, request: httpx.Request, bundle_id: str) -> httpx.Response:
        if bundle_id not in self.imported:
            return httpx.Response(404, json={"message": "bundle not imported"})
        self.activate(bundle_id)
        return httpx.Response(200, json={"aborted": False})

    def _scenario_run(self, request: httpx.Request, scenario_id: str) -> httpx.Response:
        run_id = f"run-{len(self.scenario_runs) + 1}"
        run: dict[str, Any] = {"runId": run_id}
        if self.scenario_outcome is not None:
            run["result"] = {"outcome": self.scenario_outcome}
        self.scenario_runs.insert(0, run)
        for n in range(self.concurrent_scenario_runs):
            self.scenario_runs.insert(0, {"runId": f"{run_id}-other-{n + 1}"})
        return httpx.Response(200, json={"runId": run_id})

    def _scenario_last_runs(self, request: httpx.Request, scenario_id: str) -> httpx.Response:
        limit = int(request.url.params.get("limit", len(self.scenario_runs)))
        return httpx.Response(200, json=self.scenario_runs[:limit])

    def _settings_get(self, request: httpx.Request, deployment_id: str) -> httpx.Response:
        if deployment_id not in self.deployments:
            return httpx.Response(404, json={"message": "deployment not found"})
        return httpx.Response(200, json=dict(self.deployments[deployment_id]["settings"]))

    def _settings_put(self, request: httpx.Request, deployment_id: str) -> httpx.Response:
        if deployment_id not in self.deployments:
            return httpx.Response(404, json={"message": "deployment not found"})
        self.deployments[deployment_id]["settings"] = json.loads(request.content)
        return httpx.Response(204)

    def _update(self, request: httpx.Request, deployment_id: str) -> httpx.Response:
        deployment = self.deployments.get(deployment_id)
        if deployment is None:
            return httpx.Response(404, json={"message": "deployment not found"})
        if self.update_result.get("failed"):
            return httpx.Response(200, json=self.update_result)
        target: FakeInstance = deployment["target"]
        bundle_id = deployment["settings"]["bundleId"]
        target.add_imported(bundle_id)
        target.activate(bundle_id)
        return httpx.Response(200, json={"failed": False})


@dataclass
class FakePlatform:
    """The three instances of a fake platform."""

    dev: FakeInstance
    staging: FakeInstance
    prod: FakeInstance

    def instance(self, name: EnvironmentName) -> FakeInstance:
        return getattr(self, name.value)

    def bundle_calls(self) -> list[str]:
        return self.dev.bundle_calls() + self.staging.bundle_calls() + self.prod.bundle_calls()


class StubValidationRunner(ValidationRunner):
    """Validation runner with a chosen outcome per environment.

    outcomes maps an environment to True (pass), False (fail) or an
    exception instance (raised from the execution). Unlisted environments pass.
    """

    def __init__(self) -> None:
        self.outcomes: dict[EnvironmentName, bool | Exception] = {}
        self.calls: list[EnvironmentName] = []

    def _execute(
        self,
        environment: EnvironmentName,
        client: Any,
        project_key: str,
    ) -> tuple[bool, str | None, dict[str, Any]]:
        self.calls.append(environment)
        outcome = self.outcomes.get(environment, True)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome, None if outcome else "stub validation failed", {}


@pytest.fixture
def platform(commit_sha: str) -> FakePlatform:
    """Fake platform in sync with the commit; staging and prod serve PREVIOUS_BUNDLE."""
    fake = FakePlatform(
        dev=FakeInstance("dev"),
        staging=FakeInstance("staging"),
        prod=FakeInstance("prod"),
    )
    fake.dev.commit = commit_sha
    fake.staging.seed_active(PREVIOUS_BUNDLE)
    fake.prod.seed_active(PREVIOUS_BUNDLE)
    return fake


def _environment(name: str, **extra: Any) -> EnvironmentConfig:
    return EnvironmentConfig(
        name=name,
        url=f"https://{name}.platform.example.com",
        token=f"{name}-secret-token",
        **extra,
    )


@pytest.fixture
def pipeline_config(tmp_path: Path) -> PipelineConfig:
    """Full-promotion configuration pointing at the fake platform."""
    return PipelineConfig(
        project_key=PROJECT_KEY,
        dev=_environment("dev"),
        staging=_environment("staging", infra_id="staging-infra"),
        prod=_environment("prod", infra_id="prod-infra"),
        retry=RetryConfig(max_attempts=2, initial_delay_ms=0, jitter=False),
        lock_dir=tmp_path / "locks",
        history_path=tmp_path / "history.jsonl",
    )


@pytest.fixture
def make_clients(
    platform: FakePlatform,
) -> Callable[[PipelineConfig], dict[EnvironmentName, EnvironmentClient]]:
    """Factory building clients wired to the fake platform."""

    def _make(config: PipelineConfig) -> dict[EnvironmentName, EnvironmentClient]:
        return {
            env.name: EnvironmentClient.from_config(
                env,
                retry=config.retry,
                transport=platform.instance(env.name).transport(),
            )
            for env in config.environments
        }

    return _make


@pytest.fixture
def clients(
    make_clients: Callable[[PipelineConfig], dict[EnvironmentName, EnvironmentClient]],
    pipeline_config: PipelineConfig,
) -> Iterator[dict[EnvironmentName, EnvironmentClient]]:
    """Clients for all three environments."""
    built = make_clients(pipeline_config)
    yield built
    for client in built.values():
        client.close()


@pytest.fixture
def validation_runner() -> StubValidationRunner:
    """Validation runner that passes everywhere unless told otherwise."""
    return StubValidationRunner()


@pytest.fixture
def make_orchestrator(
    pipeline_config: PipelineConfig,
    clients: dict[EnvironmentName, EnvironmentClient],
    validation_runner: StubValidationRunner,
    commit_sha: str,
) -> Callable[..., DeploymentOrchestrator]:
    """Factory for orchestrators over the fake platform.

    Usage:
        orchestrator = make_orchestrator(run_tests_only=True)
        orchestrator = make_orchestrator(git_commit=other_sha)
    """

    def _make(
        config: PipelineConfig | None = None,
        git_commit: str | None = None,
        **updates: Any,
    ) -> DeploymentOrchestrator:
        effective = config or pipeline_config
        if updates:
            effective = effective.model_copy(update=updates)
        return DeploymentOrchestrator.from_config(
            effective,
            CIContextGitRemote(git_commit or commit_sha, env={}),
            clients=clients,
            validation_runner=validation_runner,
        )

    return _make


@pytest.fixture
def project_key() -> str:
    """Project deployed by the fake platform."""
    return PROJECT_KEY


@pytest.fixture
def previous_bundle() -> str:
    """Bundle staging and prod serve before a run."""
    return PREVIOUS_BUNDLE


@pytest.fixture
def make_instance() -> Callable[[str], FakeInstance]:
    """Factory for standalone fake instances."""
    return FakeInstance


@pytest.fixture
def deployments(platform: FakePlatform, previous_bundle: str) -> dict[str, dict[str, Any]]:
    """Deployer deployments on dev for staging and prod, serving PREVIOUS_BUNDLE."""
    for env in ("staging", "prod"):
        infra_id = f"{env}-infra"
        platform.dev.deployments[f"{PROJECT_KEY}-on-{infra_id}"] = {
            "settings": {"bundleId": previous_bundle, "infraId": infra_id},
            "target": getattr(platform, env),
        }
    return platform.dev.deployments
