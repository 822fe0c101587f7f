import threading
import time
from pathlib import Path
from typing import Optional

import pytest

from stagehand_automation import runner as runner_mod
from stagehand_automation.errors import ConnectivityError
from stagehand_automation.executors import SSHExecutor
from stagehand_automation.facts import FactCache
from stagehand_automation.inventory import InventoryLoader
from stagehand_automation.planner import PlanBuilder, TagFilter
from stagehand_automation.types import (
    ActionResult,
    EffectiveConfig,
    HostConfig,
    HostStatus,
    OperationSpec,
    Play,
    Playbook,
    RoleSpec,
)


class Recorder:
    """Fake operation backend: behaviour comes from the task parameters."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, str]] = []
        self.specs: list[dict] = []
        self.flaky = 0
        self.lock = threading.Lock()
        self.active = 0
        self.peak = 0
        self.barrier = threading.Barrier(2, timeout=5)
        recorder = self

        class FakeOperation:
            def __init__(self, spec: dict, context=None):
                self.spec = spec
                self.context = context or {}

            def apply(self, host: HostConfig, executor):
                if self.spec.get("explode"):
                    raise RuntimeError("boom")
                if self.spec.get("flaky"):
                    with recorder.lock:
                        if recorder.flaky > 0:
                            recorder.flaky -= 1
                            raise ConnectivityError(f"{host.name}: connection reset")
                if self.spec.get("hold"):
                    self._hold()
                with recorder.lock:
                    recorder.calls.append((host.name, self.spec["name"]))
                    recorder.specs.append(self.spec)
                failed = bool(self.spec.get("fail")) or host.name in self.spec.get("fail_on", [])
                return ActionResult(
                    host=host.name,
                    action="fake",
                    changed=bool(self.spec.get("changed")),
                    details=str(self.spec.get("msg", "done")),
                    failed=failed,
                )

            def _hold(self) -> None:
                with recorder.lock:
                    recorder.active += 1
                    recorder.peak = max(recorder.peak, recorder.active)
                recorder.barrier.wait()
                time.sleep(0.02)
                with recorder.lock:
                    recorder.active -= 1

        self.operation = FakeOperation

    def names(self, host: str) -> list[str]:
        return [name for call_host, name in self.calls if call_host == host]


class FakeExecutor:
    def __init__(self, host: HostConfig, dry_run: bool, unreachable: dict[str, int]):
        self.host = host
        self.dry_run = dry_run
        self.unreachable = unreachable

    def check_connection(self) -> None:
        remaining = self.unreachable.get(self.host.name, 0)
        if remaining:
            self.unreachable[self.host.name] = remaining - 1
            raise ConnectivityError(f"{self.host.name}: no route to host")


@pytest.fixture()
def recorder(monkeypatch: pytest.MonkeyPatch) -> Recorder:
    rec = Recorder()
    monkeypatch.setattr(
        runner_mod,
        "operation_class",
        lambda type_name: None if type_name == "bogus" else rec.operation,
    )
    return rec


def _op(name: str, **kwargs) -> OperationSpec:
    params = {key: kwargs.pop(key) for key in list(kwargs) if key not in OperationSpec.__dataclass_fields__}
    return OperationSpec(type=kwargs.pop("type", "fake"), data={"name": name, **params}, **kwargs)


def _handler(name: str, **params) -> OperationSpec:
    return OperationSpec(type="fake", data={"name": name, **params}, id=name)


def _plans(play: Play, hosts=("web01",), tag_filter: Optional[TagFilter] = None, **values):
    builder = PlanBuilder()
    return {
        name: builder.build(HostConfig(name=name), EffectiveConfig(host=name, values=values), play, tag_filter)
        for name in hosts
    }


def _engine(unreachable: Optional[dict[str, int]] = None, **kwargs) -> runner_mod.ExecutionEngine:
    state = dict(unreachable or {})
    delays: list[float] = []
    kwargs.setdefault("sleep", delays.append)
    engine = runner_mod.ExecutionEngine(
        executor_factory=lambda host, dry_run=False: FakeExecutor(host, dry_run, state),
        **kwargs,
    )
    engine.delays = delays  # type: ignore[attr-defined]
    return engine


def test_handler_runs_once_for_multiple_notifications(recorder: Recorder) -> None:
    play = Play(
        name="site",
        hosts="all",
        tasks=[
            _op("A", changed=True, notify=("H",)),
            _op("B", changed=True, notify=("H",)),
            _op("C", changed=False, notify=("H",)),
        ],
        handlers=[_handler("H", changed=True)],
    )

    results = _engine().run(_plans(play))

    host = results["web01"]
    assert host.status is HostStatus.SUCCEEDED
    assert recorder.names("web01") == ["A", "B", "C", "H"]
    assert [r.handler for r in host.results] == [False, False, False, True]


def test_handler_not_run_without_change(recorder: Recorder) -> None:
    play = Play(
        name="site",
        hosts="all",
        tasks=[_op("A", notify=("H",))],
        handlers=[_handler("H")],
    )

    _engine().run(_plans(play))

    assert recorder.names("web01") == ["A"]


def test_each_flush_window_runs_handler_again(recorder: Recorder) -> None:
    play = Play(
        name="site",
        hosts="all",
        roles=[RoleSpec(name="nginx", tasks=[_op("conf", changed=True, notify=("reload",))])],
        tasks=[_op("vhost", changed=True, notify=("reload",))],
        handlers=[_handler("reload")],
    )

    _engine().run(_plans(play))

    assert recorder.names("web01") == ["conf", "reload", "vhost", "reload"]


def test_failure_is_isolated_per_host(recorder: Recorder) -> None:
    play = Play(
        name="site",
        hosts="all",
        tasks=[
            _op("one"),
            _op("two"),
            _op("three", fail_on=["web01"]),
            _op("four"),
            _op("five"),
        ],
    )

    results = _engine().run(_plans(play, hosts=("web01", "web02")), max_parallel=2)

    assert results["web01"].status is HostStatus.FAILED
    assert len(results["web01"].results) == 3
    assert results["web01"].error == "done"
    assert results["web02"].status is HostStatus.SUCCEEDED
    assert recorder.names("web02") == ["one", "two", "three", "four", "five"]


def test_failed_host_discards_pending_handlers(recorder: Recorder) -> None:
    play = Play(
        name="site",
        hosts="all",
        tasks=[_op("A", changed=True, notify=("H",)), _op("B", fail=True)],
        handlers=[_handler("H")],
    )
    engine = _engine()

    results = engine.run(_plans(play))

    assert results["web01"].status is HostStatus.FAILED
    assert recorder.names("web01") == ["A", "B"]
    assert engine.notifier.pending("web01") == []


def test_ignore_errors_keeps_host_running(recorder: Recorder) -> None:
    play = Play(
        name="site",
        hosts="all",
        tasks=[_op("flaky-check", fail=True, ignore_errors=True), _op("next")],
    )

    results = _engine().run(_plans(play))

    host = results["web01"]
    assert host.status is HostStatus.SUCCEEDED
    assert host.results[0].failed and host.results[0].ignored
    assert host.failed == 1
    assert recorder.names("web01") == ["flaky-check", "next"]


def test_unreachable_host_is_retried_then_given_up(recorder: Recorder) -> None:
    play = Play(name="site", hosts="all", tasks=[_op("A")])
    engine = _engine(unreachable={"web01": 10}, retries=3, retry_delay=0.5)

    results = engine.run(_plans(play, hosts=("web01", "web02")))

    assert results["web01"].status is HostStatus.UNREACHABLE
    assert "no route to host" in results["web01"].error
    assert engine.delays == [0.5, 1.0, 2.0]
    assert results["web02"].status is HostStatus.SUCCEEDED


def test_transient_connectivity_recovers(recorder: Recorder) -> None:
    play = Play(name="site", hosts="all", tasks=[_op("A", flaky=True)])
    recorder.flaky = 1
    engine = _engine(unreachable={"web01": 2}, retries=3, retry_delay=0.1)

    results = engine.run(_plans(play))

    assert results["web01"].status is HostStatus.SUCCEEDED
    assert engine.delays == pytest.approx([0.1, 0.2, 0.1])
    assert recorder.names("web01") == ["A"]


def test_logical_failures_are_not_retried(recorder: Recorder) -> None:
    play = Play(name="site", hosts="all", tasks=[_op("A", fail=True)])
    engine = _engine()

    engine.run(_plans(play))

    assert recorder.names("web01") == ["A"]
    assert engine.delays == []


def test_dry_run_reports_handlers_without_running_them(recorder: Recorder) -> None:
    play = Play(
        name="site",
        hosts="all",
        tasks=[_op("A", changed=True, notify=("H",))],
        handlers=[_handler("H")],
    )

    results = _engine(dry_run=True).run(_plans(play))

    handler_result = results["web01"].results[-1]
    assert handler_result.handler and handler_result.skipped
    assert handler_result.details == "would run"
    assert recorder.names("web01") == ["A"]


def test_tag_and_guard_skips_are_reported(recorder: Recorder) -> None:
    tasks = [_op(f"op{i}", tags=frozenset({"ssh"}) if i < 2 else frozenset()) for i in range(10)]
    play = Play(name="site", hosts="all", tasks=tasks)

    results = _engine().run(_plans(play, tag_filter=TagFilter.from_options(["ssh"])))

    host = results["web01"]
    assert recorder.names("web01") == ["op0", "op1"]
    assert host.skipped == 8
    assert host.ok == 2


def test_registered_results_drive_deferred_guards(recorder: Recorder) -> None:
    play = Play(
        name="site",
        hosts="all",
        tasks=[
            _op("probe", changed=True, register="probe", msg="v1.2"),
            _op("on-change", when=("probe.changed",)),
            _op("on-no-change", when=("not probe.changed",)),
            _op("uses-output", msg="seen {{ probe.details }}"),
        ],
    )

    results = _engine().run(_plans(play))

    assert recorder.names("web01") == ["probe", "on-change", "uses-output"]
    assert results["web01"].results[2].skipped
    assert results["web01"].results[3].details == "seen v1.2"


def test_parameters_are_rendered_from_effective_config(recorder: Recorder) -> None:
    play = Play(name="site", hosts="all", tasks=[_op("greet", msg="{{ greeting }}, {{ target }}")])

    results = _engine().run(_plans(play, greeting="hello", target="world"))

    assert results["web01"].results[0].details == "hello, world"


def test_undefined_parameter_variable_fails_host(recorder: Recorder) -> None:
    play = Play(name="site", hosts="all", tasks=[_op("greet", msg="{{ nope }}"), _op("after")])

    results = _engine().run(_plans(play))

    assert results["web01"].status is HostStatus.FAILED
    assert "nope" in results["web01"].error
    assert recorder.names("web01") == []


def test_facts_are_available_to_guards(recorder: Recorder) -> None:
    cache = FactCache(lambda host, executor: {"os_family": "Debian"})
    play = Play(
        name="site",
        hosts="all",
        tasks=[
            _op("apt", when=("facts.os_family == 'Debian'",)),
            _op("dnf", when=("facts.os_family == 'RedHat'",)),
        ],
    )

    _engine(fact_cache=cache).run(_plans(play))

    assert recorder.names("web01") == ["apt"]


def test_fact_gather_failure_fails_host(recorder: Recorder) -> None:
    def broken(host, executor):
        raise RuntimeError("uname missing")

    play = Play(name="site", hosts="all", tasks=[_op("A")])

    results = _engine(fact_cache=FactCache(broken)).run(_plans(play))

    assert results["web01"].status is HostStatus.FAILED
    assert "uname missing" in results["web01"].error
    assert recorder.calls == []


def test_unknown_operation_and_exceptions_fail(recorder: Recorder) -> None:
    play_unknown = Play(name="site", hosts="all", tasks=[_op("x", type="bogus")])
    play_boom = Play(name="site", hosts="all", tasks=[_op("x", explode=True)])

    unknown = _engine().run(_plans(play_unknown))["web01"]
    boom = _engine().run(_plans(play_boom))["web01"]

    assert unknown.status is HostStatus.FAILED
    assert unknown.results[0].details == "unknown operation 'bogus'"
    assert boom.status is HostStatus.FAILED
    assert boom.results[0].details == "boom"


def test_cancel_stops_after_current_operation(recorder: Recorder) -> None:
    play = Play(name="site", hosts="all", tasks=[_op("A"), _op("B")])
    engine = _engine()
    engine.progress_callback = lambda result: engine.cancel()

    results = engine.run(_plans(play, hosts=("web01", "web02")), max_parallel=1)

    assert results["web01"].status is HostStatus.CANCELLED
    assert recorder.names("web01") == ["A"]
    assert results["web02"].status is HostStatus.CANCELLED
    assert results["web02"].results == []


def test_file_operations_are_idempotent(tmp_path: Path) -> None:
    target = tmp_path / "etc" / "motd"
    play = Play(
        name="site",
        hosts="all",
        tasks=[
            OperationSpec(type="file", data={"path": str(tmp_path / "etc"), "state": "directory"}),
            OperationSpec(type="file", data={"path": str(target), "content": "{{ motd }}\n", "mode": "0640"}),
        ],
    )
    engine = runner_mod.ExecutionEngine()

    first = engine.run(_plans(play, motd="managed host"))["web01"]
    second = engine.run(_plans(play, motd="managed host"))["web01"]

    assert first.changed == 2
    assert second.changed == 0
    assert second.ok == 2
    assert target.read_text() == "managed host\n"


def test_playbook_runner_skips_failed_hosts_in_later_plays(recorder: Recorder) -> None:
    inventory = InventoryLoader().from_dict(
        {
            "all": {
                "children": {
                    "web": {"hosts": {"web01": {}, "web02": {}, "web03": {}}},
                    "db": {"hosts": {"db01": {}}},
                }
            }
        }
    )
    playbook = Playbook(
        path="site.toml",
        plays=[
            Play(name="first", hosts="web", tasks=[_op("setup", fail_on=["web02"])]),
            Play(name="second", hosts="all", tasks=[_op("finish")]),
        ],
    )
    runner = runner_mod.PlaybookRunner(inventory, _engine(), limit="web*:!web03")

    results = runner.run(playbook)

    assert set(results) == {"web01", "web02"}
    assert results["web01"].status is HostStatus.SUCCEEDED
    assert recorder.names("web01") == ["setup", "finish"]
    assert results["web02"].status is HostStatus.FAILED
    assert recorder.names("web02") == ["setup"]


def test_whole_expression_parameters_keep_native_types(recorder: Recorder) -> None:
    play = Play(
        name="site",
        hosts="all",
        tasks=[_op("install", packages="{{ pkgs }}", uid="{{ uid }}", label="uid {{ uid }}")],
    )

    _engine().run(_plans(play, pkgs=["samba", "vim"], uid=1001))

    spec = recorder.specs[0]
    assert spec["packages"] == ["samba", "vim"]
    assert spec["uid"] == 1001
    assert spec["label"] == "uid 1001"


def test_ssh_connection_uses_merged_port_and_user(recorder: Recorder) -> None:
    inventory = InventoryLoader().from_dict(
        {
            "all": {
                "vars": {"port": 2200, "user": "admin"},
                "hosts": {
                    "host1": {"address": "10.0.0.1"},
                    "host2": {"address": "10.0.0.2", "port": 22},
                },
            }
        }
    )
    seen: dict[str, HostConfig] = {}

    def factory(host: HostConfig, dry_run: bool = False) -> FakeExecutor:
        seen[host.name] = host
        return FakeExecutor(host, dry_run, {})

    engine = runner_mod.ExecutionEngine(executor_factory=factory)
    playbook = Playbook(path="site.toml", plays=[Play(name="site", hosts="all", tasks=[_op("A")])])

    runner_mod.PlaybookRunner(inventory, engine).run(playbook)

    assert (seen["host1"].user, seen["host1"].port) == ("admin", 2200)
    assert seen["host2"].port == 22
    argv = SSHExecutor(seen["host1"]).ssh_prefix()
    assert argv[argv.index("-p") + 1] == "2200"
    assert "admin@10.0.0.1" in argv


def test_max_parallel_bounds_hosts_in_flight(recorder: Recorder) -> None:
    play = Play(name="site", hosts="all", tasks=[_op("slow", hold=True)])
    hosts = tuple(f"web{idx:02d}" for idx in range(1, 7))

    results = _engine().run(_plans(play, hosts=hosts), max_parallel=2)

    assert all(result.status is HostStatus.SUCCEEDED for result in results.values())
    assert recorder.peak == 2


def test_failing_handler_fails_host(recorder: Recorder) -> None:
    play = Play(
        name="site",
        hosts="all",
        pre_tasks=[_op("A", changed=True, notify=("H",))],
        tasks=[_op("B")],
        handlers=[_handler("H", fail=True)],
    )

    results = _engine().run(_plans(play))

    assert results["web01"].status is HostStatus.FAILED
    assert results["web01"].error == "handler 'H' failed: done"
    assert recorder.names("web01") == ["A", "H"]
