import pytest

from marionette_automation.errors import ValidationError
from marionette_automation.templating import host_context, looks_like_template, render_args
from marionette_automation.types import HostConfig


def test_host_context_includes_identity_and_variables() -> None:
    host = HostConfig(name="web1", address="10.0.0.5", variables={"tier": "frontend"})
    context = host_context(host, {"release": "v2"})

    assert context == {"tier": "frontend", "host_name": "web1", "host_address": "10.0.0.5", "release": "v2"}
    assert host_context(HostConfig(name="db1"))["host_address"] == "db1"


def test_render_args_descends_into_containers() -> None:
    args = {
        "dest": "/etc/{{ app }}.conf",
        "env": {"PORT": "{{ port }}"},
        "hosts": ["{{ host_name }}", "static"],
        "timeout": 30,
        "_check_mode": "{{ untouched }}",
    }
    rendered = render_args(args, {"app": "web", "port": 8080, "host_name": "web1"})

    assert rendered == {
        "dest": "/etc/web.conf",
        "env": {"PORT": "8080"},
        "hosts": ["web1", "static"],
        "timeout": 30,
        "_check_mode": "{{ untouched }}",
    }


def test_render_args_does_not_mutate_input() -> None:
    args = {"content": "{{ motd }}\n"}
    rendered = render_args(args, {"motd": "hello"})
    assert rendered["content"] == "hello\n"
    assert args["content"] == "{{ motd }}\n"


def test_undefined_variable_names_the_field() -> None:
    with pytest.raises(ValidationError) as excinfo:
        render_args({"env": {"PORT": "{{ port }}"}}, {})
    assert excinfo.value.field == "env.PORT"

    with pytest.raises(ValidationError) as excinfo:
        render_args({"items": ["ok", "{{ missing }}"]}, {})
    assert excinfo.value.field == "items[1]"


def test_syntax_error_is_a_validation_error() -> None:
    with pytest.raises(ValidationError, match="template syntax error"):
        render_args({"cmd": "echo {{ broken"}, {})


def test_looks_like_template() -> None:
    assert looks_like_template("{{ x }}")
    assert looks_like_template("{% if x %}y{% endif %}")
    assert not looks_like_template("echo ${HOME}")
