"""Tests for rendered configuration fragments."""

import pytest
from jinja2 import UndefinedError

from vpsboot.config import Fail2BanSettings, SshSettings
from vpsboot.render import (
    render_caddyfile,
    render_jail_local,
    render_sshd_dropin,
    render_sudoers,
    render_template,
)


class TestSshdDropin:
    def test_hardened_defaults(self):
        text = render_sshd_dropin(SshSettings(port=2222), allow_users=["deploy"])
        lines = text.splitlines()
        assert "Port 2222" in lines
        assert "PermitRootLogin no" in lines
        assert "PasswordAuthentication no" in lines
        assert "PubkeyAuthentication yes" in lines
        assert "AllowUsers deploy" in lines
        assert text.endswith("\n")

    def test_root_login_enabled(self):
        text = render_sshd_dropin(SshSettings(permit_root_login=True))
        assert "PermitRootLogin yes" in text.splitlines()
        assert "AllowUsers" not in text

    def test_rendering_is_deterministic(self):
        ssh = SshSettings()
        assert render_sshd_dropin(ssh, ["a"]) == render_sshd_dropin(ssh, ["a"])


class TestJailLocal:
    def test_sshd_jail_uses_ssh_port(self):
        text = render_jail_local(Fail2BanSettings(), ssh_port=2222)
        assert "[sshd]" in text
        assert "port = 2222" in text
        assert "maxretry = 3" in text
        assert "logpath" not in text

    def test_file_backend_sets_logpath(self):
        text = render_jail_local(Fail2BanSettings(backend="auto"), ssh_port=22)
        assert "logpath = /var/log/auth.log" in text


class TestCaddyfile:
    def test_site_block(self):
        text = render_caddyfile({"N8N_HOST": "n8n.example.com", "N8N_PORT": "5678", "SSL_EMAIL": "ops@example.com"})
        assert "n8n.example.com {" in text
        assert "reverse_proxy n8n:5678" in text
        assert "email ops@example.com" in text
        assert "portainer" not in text

    def test_default_port_and_portainer(self):
        text = render_caddyfile({"N8N_HOST": "n8n.example.com"}, portainer=True)
        assert "reverse_proxy n8n:5678" in text
        assert "portainer.n8n.example.com {" in text
        assert "email" not in text

    def test_missing_host(self):
        with pytest.raises(KeyError):
            render_caddyfile({})


def test_sudoers():
    assert render_sudoers("deploy").splitlines()[-1] == "deploy ALL=(ALL:ALL) NOPASSWD:ALL"


def test_strict_undefined():
    with pytest.raises(UndefinedError):
        render_template("sudoers.j2")
