"""
Tests for the async scheduler: linear execution, failures, blocks,
handlers, loops and fact gathering.
"""

import asyncio
import logging

import pytest

from stratum.config import StratumConfig
from stratum.engine.errors import CollectionError, ExitCode, TemplateSyntaxError
from stratum.engine.playbook import PlaybookParser
from stratum.engine.resolver import ContextResolver
from stratum.engine.results import TaskStatus
from stratum.engine.scheduler import Scheduler
from stratum.inventory import InventoryParser

INVENTORY = """
[web]
web1
web2

[db]
db1
"""


class FakeDispatcher:
    """Records module calls; per-module behaviour is a function of (args, host)."""

    def __init__(self, behaviour=None, delay: float = 0.0):
        self.behaviour = behaviour or {}
        self.delay = delay
        self.calls = []
        self.active = 0
        self.max_active = 0

    async def __call__(self, module, args, host):
        self.calls.append((module, args, host.name))
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        if self.delay:
            await asyncio.sleep(self.delay)
        self.active -= 1
        handler = self.behaviour.get(module)
        if handler is not None:
            return handler(args, host)
        return {"msg": args.get("msg", "")}

    def messages(self, host=None):
        return [args.get("msg") for module, args, name in self.calls
                if module == "debug" and (host is None or name == host)]

    def hosts_for(self, module):
        return sorted(name for m, _, name in self.calls if m == module)


def make_scheduler(dispatcher, inventory=INVENTORY, **kwargs) -> Scheduler:
    graph = InventoryParser.from_string(inventory, fmt="ini")
    resolver = ContextResolver(graph, extra_vars=kwargs.pop("extra_vars", None))
    kwargs.setdefault("config", StratumConfig())
    return Scheduler(resolver, dispatcher, **kwargs)


def fail_on(host_name):
    def behaviour(args, host):
        if host.name == host_name:
            return {"failed": True, "msg": "boom"}
        return {"changed": True}
    return behaviour


class TestLinearExecution:
    """Test task ordering and per-host isolation."""

    @pytest.mark.asyncio
    async def test_register_then_use(self):
        dispatcher = FakeDispatcher({
            "command": lambda args, host: {"changed": True, "stdout": f"hi {host.name}"},
        })
        plays = PlaybookParser.from_string("""
- hosts: web
  tasks:
    - name: Say hi
      command: echo hi
      register: out
    - name: Show
      debug:
        msg: "{{ out.stdout }} ({{ out.stdout_lines | length }} line)"
""")
        result = await make_scheduler(dispatcher).run_play(plays[0])

        assert dispatcher.messages("web1") == ["hi web1 (1 line)"]
        assert dispatcher.messages("web2") == ["hi web2 (1 line)"]
        assert dispatcher.calls[0][1] == {"_raw_params": "echo hi"}
        assert result.failed_hosts == []

    @pytest.mark.asyncio
    async def test_failure_isolated_to_host(self):
        dispatcher = FakeDispatcher({"command": fail_on("web1")})
        plays = PlaybookParser.from_string("""
- hosts: web
  tasks:
    - command: risky
    - debug:
        msg: after
""")
        result = await make_scheduler(dispatcher).run_play(plays[0])

        assert result.failed_hosts == ["web1"]
        assert dispatcher.hosts_for("debug") == ["web2"]
        assert result.host_stats["web1"].failed == 1
        assert result.host_stats["web2"].changed == 1

    @pytest.mark.asyncio
    async def test_undefined_variable_fails_only_that_host(self):
        dispatcher = FakeDispatcher()
        plays = PlaybookParser.from_string("""
- hosts: web
  tasks:
    - debug:
        msg: "{{ only_here }}"
""")
        scheduler = make_scheduler(dispatcher, inventory="[web]\nweb1 only_here=present\nweb2\n")
        result = await scheduler.run_play(plays[0])

        assert result.failed_hosts == ["web2"]
        assert dispatcher.messages() == ["present"]
        failure = result.results_for("web2")[0]
        assert "only_here" in failure.msg
        assert failure.results["exception"] == "UndefinedVariableError"

    @pytest.mark.asyncio
    async def test_unknown_filter_reported_per_host(self):
        dispatcher = FakeDispatcher()
        plays = PlaybookParser.from_string("""
- hosts: web
  tasks:
    - debug:
        msg: "{{ inventory_hostname | frobnicate }}"
""")
        result = await make_scheduler(dispatcher).run_play(plays[0])

        assert result.failed_hosts == ["web1", "web2"]
        assert dispatcher.calls == []
        assert "frobnicate" in result.results_for("web1")[0].msg

    @pytest.mark.asyncio
    async def test_ignore_errors(self):
        dispatcher = FakeDispatcher({"command": fail_on("web1")})
        plays = PlaybookParser.from_string("""
- hosts: web
  tasks:
    - command: risky
      ignore_errors: true
    - debug:
        msg: after
""")
        result = await make_scheduler(dispatcher).run_play(plays[0])

        assert result.failed_hosts == []
        assert dispatcher.hosts_for("debug") == ["web1", "web2"]
        assert result.host_stats["web1"].ignored == 1
        assert result.host_stats["web1"].failed == 0

    @pytest.mark.asyncio
    async def test_when_skips(self):
        dispatcher = FakeDispatcher()
        plays = PlaybookParser.from_string("""
- hosts: web
  tasks:
    - debug:
        msg: only web1
      when: inventory_hostname == 'web1'
""")
        result = await make_scheduler(dispatcher).run_play(plays[0])

        assert dispatcher.hosts_for("debug") == ["web1"]
        assert result.results_for("web2")[0].status == TaskStatus.SKIPPED
        assert result.host_stats["web2"].skipped == 1

    @pytest.mark.asyncio
    async def test_hostvars_sees_other_hosts_registered_results(self):
        dispatcher = FakeDispatcher({
            "command": lambda args, host: {"stdout": host.name.upper()},
        })
        plays = PlaybookParser.from_string("""
- hosts: web
  tasks:
    - command: hostname
      register: out
    - debug:
        msg: "{{ hostvars['web2'].out.stdout }}"
      when: inventory_hostname == 'web1'
""")
        await make_scheduler(dispatcher).run_play(plays[0])

        assert dispatcher.messages("web1") == ["WEB2"]

    @pytest.mark.asyncio
    async def test_no_matching_hosts(self):
        dispatcher = FakeDispatcher()
        plays = PlaybookParser.from_string("- hosts: nothing_here\n  tasks:\n    - ping:\n")
        result = await make_scheduler(dispatcher).run_play(plays[0])
        assert result.hosts == []
        assert dispatcher.calls == []

    @pytest.mark.asyncio
    async def test_forks_limit_concurrency(self):
        dispatcher = FakeDispatcher(delay=0.01)
        plays = PlaybookParser.from_string("- hosts: all\n  tasks:\n    - ping:\n")
        await make_scheduler(dispatcher, forks=2).run_play(plays[0])

        assert len(dispatcher.calls) == 3
        assert dispatcher.max_active == 2


class TestVariablesInTasks:
    """Test precedence as seen by running tasks."""

    @pytest.mark.asyncio
    async def test_block_vars_scope(self):
        dispatcher = FakeDispatcher()
        plays = PlaybookParser.from_string("""
- hosts: web1
  vars:
    level: play
  tasks:
    - vars:
        level: outer
      block:
        - debug:
            msg: "{{ level }}"
        - vars:
            level: inner
          block:
            - debug:
                msg: "{{ level }}"
            - debug:
                msg: "{{ level }}"
              vars:
                level: task
    - debug:
        msg: "{{ level }}"
""")
        await make_scheduler(dispatcher).run_play(plays[0])

        assert dispatcher.messages() == ["outer", "inner", "task", "play"]

    @pytest.mark.asyncio
    async def test_include_vars_below_block_vars(self, tmp_path):
        (tmp_path / "inc.yml").write_text("- debug:\n    msg: \"{{ x }}\"\n")
        dispatcher = FakeDispatcher()
        plays = PlaybookParser.from_string("""
- hosts: web1
  vars:
    x: play
  tasks:
    - include_tasks: inc.yml
      vars:
        x: include
    - vars:
        x: block
      block:
        - include_tasks: inc.yml
          vars:
            x: include
""", base_dir=tmp_path)
        await make_scheduler(dispatcher).run_play(plays[0])

        assert dispatcher.messages() == ["include", "block"]

    @pytest.mark.asyncio
    async def test_extra_vars_win(self):
        dispatcher = FakeDispatcher()
        plays = PlaybookParser.from_string("""
- hosts: web1
  vars:
    level: play
  tasks:
    - debug:
        msg: "{{ level }}"
      vars:
        level: task
""")
        await make_scheduler(dispatcher, extra_vars={"level": "extra"}).run_play(plays[0])

        assert dispatcher.messages() == ["extra"]

    @pytest.mark.asyncio
    async def test_loop_and_registered_results(self):
        dispatcher = FakeDispatcher()
        plays = PlaybookParser.from_string("""
- hosts: web1
  vars:
    packages: [nginx, git]
  tasks:
    - debug:
        msg: "{{ item }}"
      loop: "{{ packages }}"
      register: out
    - debug:
        msg: "{% for r in out.results %}{{ r.item }};{% endfor %}"
""")
        result = await make_scheduler(dispatcher).run_play(plays[0])

        assert dispatcher.messages() == ["nginx", "git", "nginx;git;"]
        loop_result = result.results_for("web1")[0]
        assert [r.results["item"] for r in loop_result.loop_results] == ["nginx", "git"]

    @pytest.mark.asyncio
    async def test_loop_when_per_item(self):
        dispatcher = FakeDispatcher()
        plays = PlaybookParser.from_string("""
- hosts: web1
  tasks:
    - debug:
        msg: "{{ item }}"
      loop: [1, 2, 3]
      when: item != 2
""")
        await make_scheduler(dispatcher).run_play(plays[0])

        assert dispatcher.messages() == [1, 3]


class TestBlocksAndHandlers:
    """Test rescue/always sections and handler notification."""

    @pytest.mark.asyncio
    async def test_rescue_and_always(self):
        dispatcher = FakeDispatcher({"command": fail_on("web1")})
        plays = PlaybookParser.from_string("""
- hosts: web1
  tasks:
    - block:
        - command: risky
        - debug:
            msg: skipped by failure
      rescue:
        - debug:
            msg: rescued
      always:
        - debug:
            msg: cleanup
    - debug:
        msg: continues
""")
        result = await make_scheduler(dispatcher).run_play(plays[0])

        assert dispatcher.messages() == ["rescued", "cleanup", "continues"]
        assert result.failed_hosts == []
        stats = result.host_stats["web1"]
        assert stats.failed == 0
        assert stats.rescued == 1
        assert result.results_for("web1")[0].rescued is True

    @pytest.mark.asyncio
    async def test_always_runs_after_unrescued_failure(self):
        dispatcher = FakeDispatcher({"command": fail_on("web1")})
        plays = PlaybookParser.from_string("""
- hosts: web1
  tasks:
    - block:
        - command: risky
      always:
        - debug:
            msg: cleanup
    - debug:
        msg: never
""")
        result = await make_scheduler(dispatcher).run_play(plays[0])

        assert dispatcher.messages() == ["cleanup"]
        assert result.failed_hosts == ["web1"]

    @pytest.mark.asyncio
    async def test_block_when(self):
        dispatcher = FakeDispatcher()
        plays = PlaybookParser.from_string("""
- hosts: web
  tasks:
    - when: inventory_hostname == 'web2'
      block:
        - debug:
            msg: in block
""")
        await make_scheduler(dispatcher).run_play(plays[0])

        assert dispatcher.hosts_for("debug") == ["web2"]

    @pytest.mark.asyncio
    async def test_handlers_run_once_on_changed_hosts(self):
        dispatcher = FakeDispatcher({
            "template": lambda args, host: {"changed": host.name == "web1"},
        })
        plays = PlaybookParser.from_string("""
- hosts: web
  tasks:
    - template:
        src: a.conf
      notify: restart nginx
    - template:
        src: b.conf
      notify: [restart nginx, reload monitoring]
  handlers:
    - name: restart nginx
      service:
        name: nginx
    - name: unrelated
      service:
        name: other
    - name: monitoring
      service:
        name: monit
      listen: reload monitoring
""")
        await make_scheduler(dispatcher).run_play(plays[0])

        services = [(args["name"], host) for module, args, host in dispatcher.calls if module == "service"]
        assert services == [("nginx", "web1"), ("monit", "web1")]


class TestPlaybookRun:
    """Test multi-play runs."""

    @pytest.mark.asyncio
    async def test_syntax_error_aborts_before_anything_runs(self):
        dispatcher = FakeDispatcher()
        plays = PlaybookParser.from_string("""
- hosts: all
  tasks:
    - ping:
- hosts: all
  tasks:
    - debug:
        msg: "{{ oops( }}"
""")
        with pytest.raises(TemplateSyntaxError):
            await make_scheduler(dispatcher).run_playbook(plays)
        assert dispatcher.calls == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("section", [
        "  vars:\n    bad: \"{% if x %}oops\"\n  tasks:\n    - debug:\n        msg: \"{{ bad }}\"\n",
        "  tasks:\n    - debug:\n        msg: hi\n      vars:\n        bad: \"{{ oops( }}\"\n",
        "  tasks:\n    - vars:\n        bad: \"{{ oops( }}\"\n      block:\n        - debug:\n            msg: hi\n",
    ])
    async def test_malformed_vars_template_aborts_run(self, section):
        dispatcher = FakeDispatcher()
        plays = PlaybookParser.from_string("- hosts: all\n  tasks:\n    - ping:\n- hosts: all\n" + section)
        with pytest.raises(TemplateSyntaxError):
            await make_scheduler(dispatcher).run_playbook(plays)
        assert dispatcher.calls == []

    @pytest.mark.asyncio
    async def test_stops_when_every_host_failed(self):
        dispatcher = FakeDispatcher({"command": lambda args, host: {"failed": True}})
        plays = PlaybookParser.from_string("""
- hosts: web
  tasks:
    - command: fail
- hosts: web
  tasks:
    - ping:
""")
        result = await make_scheduler(dispatcher).run_playbook(plays, playbook_path="site.yml")

        assert len(result.play_results) == 1
        assert result.exit_code == ExitCode.HOST_FAILED
        assert result.to_dict()["playbook"] == "site.yml"

    @pytest.mark.asyncio
    async def test_successful_playbook(self):
        dispatcher = FakeDispatcher()
        plays = PlaybookParser.from_string("- hosts: web\n  tasks:\n    - ping:\n- hosts: db\n  tasks:\n    - ping:\n")
        result = await make_scheduler(dispatcher).run_playbook(plays)

        assert result.success
        assert result.exit_code == ExitCode.SUCCESS
        assert sorted(result.get_final_stats()) == ["db1", "web1", "web2"]


class TestFactGathering:
    """Test fact gathering during plays."""

    @pytest.mark.asyncio
    async def test_facts_visible_and_collection_failure_logged(self, caplog):
        async def collector(host, fact_filter):
            if host.name == "db1":
                raise CollectionError(host.name, "unreachable")
            return {"ansible_os_family": "Debian", "ansible_hostname": host.name}

        dispatcher = FakeDispatcher()
        plays = PlaybookParser.from_string("""
- hosts: all
  gather_facts: true
  tasks:
    - debug:
        msg: "{{ ansible_os_family | default('unknown') }}"
""")
        with caplog.at_level(logging.WARNING, logger="stratum"):
            result = await make_scheduler(dispatcher, collector=collector).run_play(plays[0])

        assert dispatcher.messages("web1") == ["Debian"]
        assert dispatcher.messages("db1") == ["unknown"]
        assert result.failed_hosts == []
        assert "unreachable" in caplog.text

    @pytest.mark.asyncio
    async def test_fact_filter_passed_to_collector(self):
        seen = []

        async def collector(host, fact_filter):
            seen.append(fact_filter)
            return {"ansible_os_family": "Debian", "ansible_memtotal_mb": 512}

        dispatcher = FakeDispatcher()
        plays = PlaybookParser.from_string("""
- hosts: web1
  gather_facts: true
  fact_filter: ansible_os*
  tasks:
    - debug:
        msg: "{{ ansible_facts | list }}"
""")
        await make_scheduler(dispatcher, collector=collector).run_play(plays[0])

        assert seen == ["ansible_os*"]
        assert dispatcher.messages() == [["ansible_os_family"]]

    @pytest.mark.asyncio
    async def test_gathering_off_by_default(self):
        calls = []

        async def collector(host, fact_filter):
            calls.append(host.name)
            return {}

        plays = PlaybookParser.from_string("- hosts: web\n  tasks:\n    - ping:\n")
        await make_scheduler(FakeDispatcher(), collector=collector).run_play(plays[0])

        assert calls == []
