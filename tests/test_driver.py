"""Tests for the deployment driver against the in-memory engine."""

from __future__ import annotations

import json
import stat
import threading
from dataclasses import replace

import pytest

from deployspine.cancellation import CancellationToken
from deployspine.core.errors import CycleError
from deployspine.driver import DeploymentDriver
from deployspine.health import HealthVerifier
from deployspine.log_collector import LogCollector
from deployspine.models import HealthCheckSpec, ServiceSpec
from deployspine.results import ServiceState, Verdict


def make_driver(engine, **kwargs) -> DeploymentDriver:
    kwargs.setdefault("project", "shop")
    kwargs.setdefault("max_workers", 4)
    kwargs.setdefault("health_timeout", 1.0)
    kwargs.setdefault("deploy_timeout", 30.0)
    return DeploymentDriver(engine, **kwargs)


def states(run) -> dict[str, ServiceState]:
    return {s.service: s.state for s in run.services}


@pytest.fixture
def secrets(db_secret):
    return {"db_password": db_secret}


class TestDeploy:
    def test_three_tier_success(self, fake_engine, three_tier, secrets, secret_values):
        run = make_driver(fake_engine).run(three_tier, secrets, secret_values)

        assert run.verdict == Verdict.SUCCESS
        assert run.verdict.exit_code == 0
        assert set(states(run).values()) == {ServiceState.HEALTHY}
        assert run.summary.startswith("3/3 services healthy")

    def test_starts_in_dependency_order(self, fake_engine, three_tier, secrets, secret_values):
        fake_engine.start_delay = 0.02
        make_driver(fake_engine).run(three_tier, secrets, secret_values)

        assert fake_engine.calls("start") == ["shop-database", "shop-backend", "shop-frontend"]

    def test_infrastructure_before_services(self, fake_engine, three_tier, secrets, secret_values):
        make_driver(fake_engine).run(three_tier, secrets, secret_values)

        ops = [op for op, _ in fake_engine.events]
        first_start = ops.index("start")
        assert ops.count("create_network") == 2
        assert ops.index("create_volume") < first_start
        assert max(i for i, op in enumerate(ops) if op == "create_network") < first_start
        assert sorted(fake_engine.networks) == ["backend-net", "frontend-net"]

    def test_builds_only_declared_images(self, fake_engine, three_tier, secrets, secret_values):
        run = make_driver(fake_engine).run(three_tier, secrets, secret_values)

        assert sorted(fake_engine.calls("build")) == ["acme/backend:latest", "acme/frontend:latest"]
        assert run.build is not None
        assert run.build.succeeded == {"acme/backend:latest", "acme/frontend:latest"}

    def test_no_build(self, fake_engine, three_tier, secrets, secret_values):
        run = make_driver(fake_engine).run(three_tier, secrets, secret_values, build=False)

        assert fake_engine.calls("build") == []
        assert run.build is None
        assert run.verdict == Verdict.SUCCESS

    def test_launch_configuration(
        self, fake_engine, three_tier, secrets, secret_values, db_secret
    ):
        make_driver(fake_engine).run(three_tier, secrets, secret_values)
        launch = fake_engine.containers["shop-backend"]["launch"]

        assert launch.image == "acme/backend:latest"
        assert launch.networks == ("backend-net", "frontend-net")
        assert launch.aliases == ("backend",)
        assert launch.environment == {
            "DB_HOST": "database",
            "DB_PASSWORD_FILE": "/run/secrets/db_password",
        }
        assert launch.secret_mounts == ((str(db_secret.source_path), "/run/secrets/db_password"),)
        assert launch.labels["deployspine.project"] == "shop"
        assert launch.labels["deployspine.service"] == "backend"

    def test_secret_value_never_reaches_engine(
        self, fake_engine, three_tier, secrets, secret_values
    ):
        make_driver(fake_engine).run(three_tier, secrets, secret_values)

        for container in fake_engine.containers.values():
            assert secret_values["db_password"] not in repr(container["launch"])

    def test_records_provisioned_resources(self, fake_engine, three_tier, secrets, secret_values):
        run = make_driver(fake_engine).run(three_tier, secrets, secret_values)

        assert run.networks == ["backend-net", "frontend-net"]
        assert run.volumes == ["db-data"]
        assert run.secrets == ["db_password"]

    def test_waves_recorded(self, fake_engine, three_tier, secrets, secret_values):
        run = make_driver(fake_engine).run(three_tier, secrets, secret_values)
        assert {s.service: s.wave for s in run.services} == {
            "database": 1,
            "backend": 2,
            "frontend": 3,
        }

    def test_cycle_touches_nothing(self, fake_engine):
        services = [
            ServiceSpec(name="a", image="a:1", depends_on=frozenset({"b"})),
            ServiceSpec(name="b", image="b:1", depends_on=frozenset({"a"})),
        ]
        with pytest.raises(CycleError):
            make_driver(fake_engine).run(services, {}, {})
        assert fake_engine.events == []

    def test_apply_precomputed_plan(self, fake_engine, three_tier, secrets, secret_values):
        driver = make_driver(fake_engine)
        plan = driver.planner.plan(three_tier, secrets)

        run = driver.apply(plan, secret_values)

        assert run.verdict == Verdict.SUCCESS
        assert fake_engine.calls("build") == []


class TestIdempotence:
    def test_second_run_is_a_noop(self, fake_engine, three_tier, secrets, secret_values):
        first = make_driver(fake_engine).run(three_tier, secrets, secret_values)
        ops = ("create_network", "create_volume", "start", "stop")
        events_after_first = {op: len(fake_engine.calls(op)) for op in ops}

        second = make_driver(fake_engine).run(three_tier, secrets, secret_values)

        assert first.verdict == second.verdict == Verdict.SUCCESS
        assert all(s.changed for s in first.services)
        assert not any(s.changed for s in second.services)
        for op, count in events_after_first.items():
            assert len(fake_engine.calls(op)) == count

    def test_container_ids_stable(self, fake_engine, three_tier, secrets, secret_values):
        first = make_driver(fake_engine).run(three_tier, secrets, secret_values)
        second = make_driver(fake_engine).run(three_tier, secrets, secret_values)

        assert [s.container_id for s in first.services] == [
            s.container_id for s in second.services
        ]

    def test_drift_replaces_only_changed_service(
        self, fake_engine, three_tier, secrets, secret_values
    ):
        make_driver(fake_engine).run(three_tier, secrets, secret_values)
        backend = three_tier[1]
        drifted = replace(backend, environment={**backend.environment, "LOG_LEVEL": "debug"})

        run = make_driver(fake_engine).run(
            [three_tier[0], drifted, three_tier[2]], secrets, secret_values
        )

        assert fake_engine.calls("stop") == ["shop-backend"]
        assert {s.service: s.changed for s in run.services} == {
            "database": False,
            "backend": True,
            "frontend": False,
        }
        launch = fake_engine.containers["shop-backend"]["launch"]
        assert launch.environment["LOG_LEVEL"] == "debug"

    def test_stopped_container_is_recreated(
        self, fake_engine, three_tier, secrets, secret_values
    ):
        make_driver(fake_engine).run(three_tier, secrets, secret_values)
        fake_engine.containers["shop-database"]["state"] = "exited"

        run = make_driver(fake_engine).run(three_tier, secrets, secret_values)

        assert run.service("database").changed is True
        assert fake_engine.calls("stop") == ["shop-database"]
        assert run.verdict == Verdict.SUCCESS


class TestIsolation:
    def test_build_failure_is_partial(self, fake_engine, three_tier, secrets, secret_values):
        fake_engine.fail_build.add("acme/frontend:latest")

        run = make_driver(fake_engine).run(three_tier, secrets, secret_values)

        assert run.verdict == Verdict.PARTIAL_FAILURE
        assert run.verdict.exit_code == 1
        assert states(run) == {
            "database": ServiceState.HEALTHY,
            "backend": ServiceState.HEALTHY,
            "frontend": ServiceState.FAILED,
        }
        assert "acme/frontend:latest" in run.service("frontend").error
        assert "shop-frontend" not in fake_engine.calls("start")

    def test_dependents_of_failed_start_are_not_started(
        self, fake_engine, three_tier, secrets, secret_values
    ):
        fake_engine.fail_start.add("shop-backend")

        run = make_driver(fake_engine).run(three_tier, secrets, secret_values)

        assert states(run) == {
            "database": ServiceState.HEALTHY,
            "backend": ServiceState.FAILED,
            "frontend": ServiceState.FAILED,
        }
        assert "port is already allocated" in run.service("backend").error
        assert run.service("frontend").error == "dependency 'backend' failed"
        assert fake_engine.calls("start") == ["shop-database", "shop-backend"]
        assert run.verdict == Verdict.PARTIAL_FAILURE

    def test_independent_sibling_still_attempted(self, fake_engine):
        services = [
            ServiceSpec(name="a", image="a:1"),
            ServiceSpec(name="b", image="b:1"),
            ServiceSpec(name="c", image="c:1", depends_on=frozenset({"a"})),
        ]
        fake_engine.fail_start.add("shop-a")

        run = make_driver(fake_engine).run(services, {}, {})

        assert states(run) == {
            "a": ServiceState.FAILED,
            "b": ServiceState.HEALTHY,
            "c": ServiceState.FAILED,
        }

    def test_infrastructure_failure_is_fatal(
        self, fake_engine, three_tier, secrets, secret_values, db_secret
    ):
        fake_engine.fail_network.add("backend-net")

        run = make_driver(fake_engine).run(three_tier, secrets, secret_values)

        assert run.verdict == Verdict.FAILED
        assert run.verdict.exit_code == 2
        assert "backend-net" in run.error
        assert fake_engine.calls("start") == []
        assert set(states(run).values()) == {ServiceState.FAILED}
        assert all(s.error.startswith("not started") for s in run.services)
        assert not db_secret.source_path.exists()

    def test_missing_secret_value_is_fatal(self, fake_engine, three_tier, secrets):
        run = make_driver(fake_engine).run(three_tier, secrets, {})

        assert run.verdict == Verdict.FAILED
        assert "db_password" in run.error
        assert "DB_PASSWORD" in run.error
        assert fake_engine.calls("start") == []


class TestHealth:
    def test_unhealthy_service_is_partial(
        self, fake_engine, three_tier, secrets, secret_values, tmp_path
    ):
        fake_engine.health["shop-frontend"] = "unhealthy"
        collector = LogCollector(tmp_path / "runs", "run-1")
        driver = make_driver(fake_engine, health_timeout=0.05, log_collector=collector)

        run = driver.run(three_tier, secrets, secret_values, run_id="run-1")

        assert run.verdict == Verdict.PARTIAL_FAILURE
        frontend = run.service("frontend")
        assert frontend.state == ServiceState.UNHEALTHY
        assert "did not become healthy within 0.05s" in frontend.error
        log_file = tmp_path / "runs" / "run-1" / "services" / "frontend.log"
        assert frontend.logs_path == str(log_file)
        assert "shop-frontend" in log_file.read_text()

    def test_no_healthy_service_is_failed(self, fake_engine, three_tier, secrets, secret_values):
        for name in ("shop-database", "shop-backend", "shop-frontend"):
            fake_engine.health[name] = "unhealthy"

        run = make_driver(fake_engine, health_timeout=0.05).run(three_tier, secrets, secret_values)

        assert run.verdict == Verdict.FAILED
        assert set(states(run).values()) == {ServiceState.UNHEALTHY}

    def test_service_without_check_is_healthy(self, fake_engine):
        run = make_driver(fake_engine).run([ServiceSpec(name="worker", image="w:1")], {}, {})
        assert run.service("worker").state == ServiceState.HEALTHY

    def test_command_check_runs_in_container(self, fake_engine):
        check = HealthCheckSpec(kind="command", command=("pg_isready",), interval=0.01)
        run = make_driver(fake_engine).run(
            [ServiceSpec(name="db", image="postgres:16", health_check=check)], {}, {}
        )
        assert run.verdict == Verdict.SUCCESS
        assert fake_engine.calls("exec") == ["shop-db"]

    def test_summary_written(self, fake_engine, three_tier, secrets, secret_values, tmp_path):
        collector = LogCollector(tmp_path / "runs", "run-2")
        make_driver(fake_engine, log_collector=collector).run(
            three_tier, secrets, secret_values, run_id="run-2"
        )

        summary = json.loads((tmp_path / "runs" / "run-2" / "summary.json").read_text())
        assert summary["verdict"] == "Success"
        assert summary["run_id"] == "run-2"


class TestSecretLifecycle:
    def test_cleanup_removes_secret(
        self, fake_engine, three_tier, secrets, secret_values, db_secret
    ):
        make_driver(fake_engine, cleanup_secrets=True).run(three_tier, secrets, secret_values)
        assert not db_secret.source_path.exists()

    def test_keep_secret_by_default(
        self, fake_engine, three_tier, secrets, secret_values, db_secret
    ):
        make_driver(fake_engine).run(three_tier, secrets, secret_values)

        assert db_secret.source_path.read_text() == secret_values["db_password"]
        assert stat.S_IMODE(db_secret.source_path.stat().st_mode) == 0o600

    def test_cleanup_runs_on_failure(
        self, fake_engine, three_tier, secrets, secret_values, db_secret
    ):
        fake_engine.fail_start.add("shop-database")

        run = make_driver(fake_engine, cleanup_secrets=True).run(
            three_tier, secrets, secret_values
        )

        assert run.verdict == Verdict.FAILED
        assert not db_secret.source_path.exists()

    def test_cleanup_runs_after_unhealthy(
        self, fake_engine, three_tier, secrets, secret_values, db_secret
    ):
        fake_engine.health["shop-backend"] = "unhealthy"

        make_driver(fake_engine, cleanup_secrets=True, health_timeout=0.05).run(
            three_tier, secrets, secret_values
        )

        assert not db_secret.source_path.exists()


@pytest.mark.slow
class TestInterruption:
    def test_deadline_fails_run(self, fake_engine, three_tier, secrets, secret_values):
        fake_engine.health["shop-database"] = "starting"
        driver = make_driver(fake_engine, health_timeout=30.0, deploy_timeout=0.2)

        run = driver.run(three_tier, secrets, secret_values)

        assert run.verdict == Verdict.FAILED
        assert "timed out" in run.error
        assert run.cancelled is False
        assert run.service("database").state == ServiceState.FAILED

    def test_operator_cancel(self, fake_engine, three_tier, secrets, secret_values):
        fake_engine.health["shop-database"] = "starting"
        token = CancellationToken()
        driver = make_driver(fake_engine, health_timeout=30.0, cancel=token)
        threading.Timer(0.1, token.cancel).start()

        run = driver.run(three_tier, secrets, secret_values)

        assert run.cancelled is True
        assert run.service("database").state == ServiceState.CANCELLED
        assert run.verdict != Verdict.SUCCESS
        assert run.summary.endswith("(cancelled)")

    def test_cancelled_before_start(self, fake_engine, three_tier, secrets, secret_values):
        token = CancellationToken()
        token.cancel()

        run = make_driver(fake_engine, cancel=token).run(three_tier, secrets, secret_values)

        assert run.verdict == Verdict.FAILED
        assert run.cancelled is True
        assert set(states(run).values()) == {ServiceState.CANCELLED}
        assert fake_engine.calls("start") == []


class TestCheckHealth:
    def test_running_stack_is_healthy(self, fake_engine, three_tier, secrets, secret_values):
        make_driver(fake_engine).run(three_tier, secrets, secret_values)
        starts = len(fake_engine.calls("start"))

        run = make_driver(fake_engine).check_health(three_tier, secrets)

        assert run.mode == "check-health"
        assert run.verdict == Verdict.SUCCESS
        assert len(fake_engine.calls("start")) == starts
        assert fake_engine.calls("create_network") == ["backend-net", "frontend-net"]

    def test_missing_containers_fail(self, fake_engine, three_tier, secrets):
        run = make_driver(fake_engine).check_health(three_tier, secrets)

        assert run.verdict == Verdict.FAILED
        assert run.service("database").error == "container shop-database is not_found"
        assert fake_engine.calls("start") == []


class TestTeardown:
    def test_stops_in_reverse_order(self, fake_engine, three_tier, secrets, secret_values):
        make_driver(fake_engine).run(three_tier, secrets, secret_values)

        run = make_driver(fake_engine).teardown(three_tier, secrets)

        assert run.mode == "down"
        assert run.verdict == Verdict.SUCCESS
        assert fake_engine.calls("stop") == ["shop-frontend", "shop-backend", "shop-database"]
        assert set(states(run).values()) == {ServiceState.STOPPED}
        assert fake_engine.containers == {}

    def test_networks_are_kept(self, fake_engine, three_tier, secrets, secret_values):
        make_driver(fake_engine).run(three_tier, secrets, secret_values)
        make_driver(fake_engine).teardown(three_tier, secrets)
        assert sorted(fake_engine.networks) == ["backend-net", "frontend-net"]


class TestLifecycle:
    def test_context_manager_closes_own_verifier(self, fake_engine):
        with make_driver(fake_engine) as driver:
            client = driver.verifier._http
            assert client is not None and not client.is_closed
        assert client.is_closed

    def test_injected_verifier_left_open(self, fake_engine):
        verifier = HealthVerifier(fake_engine)
        with make_driver(fake_engine, verifier=verifier):
            pass
        assert verifier._http is not None
        verifier.close()
