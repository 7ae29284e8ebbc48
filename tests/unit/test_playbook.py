"""
Tests for playbook parsing: plays, nested blocks, roles and includes.
"""

import logging
from pathlib import Path

import pytest

from stratum.engine.errors import ParseError
from stratum.engine.playbook import Block, PlaybookParser, Task, iter_tasks


def write(path: Path, content: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content)
    return path


class TestPlayParsing:
    """Test play-level parsing."""

    def test_minimal_play(self):
        plays = PlaybookParser.from_string("""
- hosts: web
  tasks:
    - name: Ping
      ping:
""")
        assert len(plays) == 1
        play = plays[0]
        assert play.name == "web"
        assert play.hosts == "web"
        assert play.gather_facts is None
        assert play.tasks[0].module == "ping"
        assert play.tasks[0].args == {}

    def test_hosts_list_joined(self):
        plays = PlaybookParser.from_string("- hosts: [web, db]\n  tasks: []\n")
        assert plays[0].hosts == "web,db"

    def test_play_fields(self):
        plays = PlaybookParser.from_string("""
- name: Site
  hosts: all
  gather_facts: yes
  fact_filter: ansible_os*
  vars:
    http_port: 80
  tasks: []
""")
        play = plays[0]
        assert play.name == "Site"
        assert play.gather_facts is True
        assert play.fact_filter == "ansible_os*"
        assert play.vars == {"http_port": 80}

    def test_multiple_documents(self):
        plays = PlaybookParser.from_string("- hosts: a\n---\n- hosts: b\n")
        assert [p.hosts for p in plays] == ["a", "b"]

    def test_task_sections_in_order(self):
        plays = PlaybookParser.from_string("""
- hosts: all
  post_tasks:
    - name: post
      debug:
  tasks:
    - name: main
      debug:
  pre_tasks:
    - name: pre
      debug:
""")
        assert [t.name for t in plays[0].tasks] == ["pre", "main", "post"]

    def test_vars_files_override_inline_vars(self, tmp_path: Path):
        write(tmp_path / "vars" / "common.yml", "http_port: 8080\nowner: ops\n")
        plays = PlaybookParser.from_string("""
- hosts: all
  vars:
    http_port: 80
    env: prod
  vars_files:
    - vars/common.yml
""", base_dir=tmp_path)
        assert plays[0].vars == {"http_port": 8080, "env": "prod", "owner": "ops"}

    def test_parse_file(self, tmp_path: Path):
        playbook = write(tmp_path / "site.yml", "- hosts: all\n  tasks:\n    - debug: msg=hi\n")
        plays = PlaybookParser(playbook).parse()
        assert plays[0].tasks[0].args == {"msg": "hi"}


class TestTaskParsing:
    """Test task keywords and module arguments."""

    def parse_task(self, task_yaml: str) -> Task:
        plays = PlaybookParser.from_string("- hosts: all\n  tasks:\n" + task_yaml)
        return plays[0].tasks[0]

    def test_task_keywords(self):
        task = self.parse_task("""
    - name: Install
      apt:
        name: "{{ pkg }}"
      register: out
      when: ansible_os_family == 'Debian'
      vars:
        pkg: nginx
      ignore_errors: true
      notify: restart nginx
""")
        assert task.module == "apt"
        assert task.args == {"name": "{{ pkg }}"}
        assert task.register == "out"
        assert task.when == "ansible_os_family == 'Debian'"
        assert task.vars == {"pkg": "nginx"}
        assert task.ignore_errors is True
        assert task.notify == ["restart nginx"]

    def test_inline_args(self):
        task = self.parse_task("    - copy: src=a.conf dest='/etc/a b.conf'\n")
        assert task.args == {"src": "a.conf", "dest": "/etc/a b.conf"}

    def test_empty_quoted_inline_arg(self):
        task = self.parse_task("    - lineinfile: line=\"\" state=present\n")
        assert task.args == {"line": "", "state": "present"}

    def test_unsupported_keywords_warn(self, caplog):
        with caplog.at_level(logging.WARNING, logger="stratum.engine.playbook"):
            task = self.parse_task("""
    - name: Restart
      service:
        name: nginx
      tags: [web]
      changed_when: false
""")
        assert task.module == "service"
        assert "'changed_when'" in caplog.text
        assert "'tags'" in caplog.text

    def test_free_form_module(self):
        task = self.parse_task("    - command: echo key=value\n")
        assert task.args == {"_raw_params": "echo key=value"}

    def test_plain_string_args(self):
        task = self.parse_task("    - debug: hello\n")
        assert task.args == {"_raw_params": "hello"}

    def test_args_keyword_merged(self):
        task = self.parse_task("""
    - command: ls
      args:
        chdir: /tmp
""")
        assert task.args == {"chdir": "/tmp", "_raw_params": "ls"}

    def test_loop_forms(self):
        assert self.parse_task("    - debug:\n      loop: [1, 2]\n").loop == [1, 2]
        assert self.parse_task("    - debug:\n      with_items: \"{{ pkgs }}\"\n").loop == "{{ pkgs }}"

    def test_loop_var(self):
        task = self.parse_task("""
    - debug:
      loop: [a]
      loop_control:
        loop_var: pkg
""")
        assert task.loop_var == "pkg"

    def test_default_name(self):
        assert self.parse_task("    - ping:\n").name == "ping task"

    def test_two_modules_rejected(self):
        with pytest.raises(ParseError, match="more than one module"):
            self.parse_task("    - ping:\n      debug:\n")

    def test_no_module_rejected(self):
        with pytest.raises(ParseError, match="no module"):
            self.parse_task("    - name: nothing\n")


class TestBlocks:
    """Test block structure."""

    def test_nested_blocks_keep_vars(self):
        plays = PlaybookParser.from_string("""
- hosts: all
  tasks:
    - name: outer
      vars:
        level: outer
      block:
        - name: inner
          vars:
            level: inner
          block:
            - name: deep task
              debug:
      rescue:
        - name: recover
          debug:
      always:
        - name: cleanup
          debug:
""")
        outer = plays[0].tasks[0]
        assert isinstance(outer, Block)
        assert outer.vars == {"level": "outer"}
        inner = outer.block[0]
        assert isinstance(inner, Block)
        assert inner.vars == {"level": "inner"}
        assert [t.name for t in iter_tasks(plays[0].tasks)] == ["deep task", "recover", "cleanup"]

    def test_include_tasks_becomes_block(self, tmp_path: Path):
        write(tmp_path / "tasks" / "extra.yml", "- name: included\n  debug:\n")
        plays = PlaybookParser.from_string("""
- hosts: all
  tasks:
    - include_tasks: tasks/extra.yml
      vars:
        from_include: true
      when: enabled
""", base_dir=tmp_path)
        block = plays[0].tasks[0]
        assert isinstance(block, Block)
        assert block.vars == {}
        assert block.when == "enabled"
        assert block.block[0].name == "included"
        assert block.block[0].role_vars == {"from_include": True}

    def test_include_missing_file(self, tmp_path: Path):
        with pytest.raises(ParseError, match="File not found"):
            PlaybookParser.from_string("- hosts: all\n  tasks:\n    - include_tasks: nope.yml\n", base_dir=tmp_path)


class TestRoles:
    """Test role loading."""

    @pytest.fixture
    def role_dir(self, tmp_path: Path) -> Path:
        role = tmp_path / "roles" / "nginx"
        write(role / "tasks" / "main.yml", "- name: install nginx\n  apt:\n    name: nginx\n")
        write(role / "vars" / "main.yml", "nginx_user: www-data\nworkers: 2\n")
        write(role / "defaults" / "main.yml", "nginx_port: 80\n")
        return tmp_path

    def test_role_vars_and_defaults_attached(self, role_dir: Path):
        plays = PlaybookParser.from_string("- hosts: all\n  roles: [nginx]\n", base_dir=role_dir)
        play = plays[0]
        assert play.roles == ["nginx"]
        task = play.tasks[0]
        assert task.role_name == "nginx"
        assert task.role_vars == {"nginx_user": "www-data", "workers": 2}
        assert task.role_defaults == {"nginx_port": 80}

    def test_role_params_override_role_vars(self, role_dir: Path):
        plays = PlaybookParser.from_string("""
- hosts: all
  roles:
    - role: nginx
      workers: 8
      tags: [web]
      when: enabled
""", base_dir=role_dir)
        task = plays[0].tasks[0]
        assert task.role_vars["workers"] == 8
        assert "tags" not in task.role_vars
        assert task.when == ["enabled"]

    def test_roles_run_before_tasks(self, role_dir: Path):
        plays = PlaybookParser.from_string("""
- hosts: all
  roles: [nginx]
  tasks:
    - name: after role
      debug:
""", base_dir=role_dir)
        assert [t.name for t in plays[0].tasks] == ["install nginx", "after role"]

    def test_include_role(self, role_dir: Path):
        plays = PlaybookParser.from_string("""
- hosts: all
  tasks:
    - include_role:
        name: nginx
      vars:
        workers: 4
""", base_dir=role_dir)
        block = plays[0].tasks[0]
        assert isinstance(block, Block)
        assert block.block[0].role_vars["workers"] == 4

    def test_missing_role(self, tmp_path: Path):
        with pytest.raises(ParseError, match="Role not found"):
            PlaybookParser.from_string("- hosts: all\n  roles: [ghost]\n", base_dir=tmp_path)


class TestParseErrors:
    """Test malformed playbooks."""

    def test_yaml_error_has_line(self):
        with pytest.raises(ParseError) as excinfo:
            PlaybookParser.from_string("- hosts: all\n  tasks: [\n")
        assert excinfo.value.line is not None

    def test_play_requires_hosts(self):
        with pytest.raises(ParseError, match="hosts"):
            PlaybookParser.from_string("- name: no hosts\n")

    def test_vars_must_be_mapping(self):
        with pytest.raises(ParseError, match="must be a dictionary"):
            PlaybookParser.from_string("- hosts: all\n  vars: [1, 2]\n")

    def test_document_must_be_list_or_mapping(self):
        with pytest.raises(ParseError, match="list of plays"):
            PlaybookParser.from_string("just a string\n")

    def test_missing_playbook_file(self, tmp_path: Path):
        with pytest.raises(ParseError, match="not found"):
            PlaybookParser(tmp_path / "missing.yml").parse()
