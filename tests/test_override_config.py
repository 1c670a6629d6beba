import base64

import yaml

from flags import FeatureFlags
from override_config import ConfigOverrider, SubscriptionLoader, parse_cli_args
from policy_groups import PolicyNames

SUBSCRIPTION = {
    "proxies": [
        {"name": "HK-1", "type": "ss", "server": "hk.example.com", "port": 443, "cipher": "aes-128-gcm", "password": "x"},
        {"name": "US-1", "type": "ss", "server": "us.example.com", "port": 443, "cipher": "aes-128-gcm", "password": "x"},
    ]
}


def test_parse_plain_yaml():
    content = yaml.safe_dump(SUBSCRIPTION, allow_unicode=True)
    assert SubscriptionLoader.parse_content(content)["proxies"][0]["name"] == "HK-1"


def test_parse_base64_yaml():
    content = base64.b64encode(yaml.safe_dump(SUBSCRIPTION).encode("utf-8")).decode("ascii")
    assert len(SubscriptionLoader.parse_content(content)["proxies"]) == 2


def test_parse_garbage_returns_empty():
    assert SubscriptionLoader.parse_content("not a subscription") == {}
    assert SubscriptionLoader.parse_content("proxies: [unclosed") == {}


def test_load_yaml_missing_file(tmp_path):
    assert SubscriptionLoader.load_yaml(str(tmp_path / "missing.yaml")) is None


def test_load_yaml_file(tmp_path):
    path = tmp_path / "sub.yaml"
    path.write_text(yaml.safe_dump(SUBSCRIPTION), encoding="utf-8")
    assert SubscriptionLoader.load_yaml(str(path))["proxies"][1]["name"] == "US-1"


def test_override_keeps_proxies_untouched():
    result = ConfigOverrider().override(SUBSCRIPTION)
    assert result["proxies"] == SUBSCRIPTION["proxies"]
    assert result["geodata-mode"] is True
    assert set(result) >= {"proxy-groups", "rule-providers", "rules", "sniffer", "dns", "geox-url"}


def test_override_groups_are_mappings():
    groups = ConfigOverrider().override(SUBSCRIPTION)["proxy-groups"]
    assert groups[0]["name"] == PolicyNames.SELECT
    assert groups[-1]["name"] == PolicyNames.GLOBAL
    assert "香港节点" in [group["name"] for group in groups]


def test_override_without_config():
    result = ConfigOverrider().override(None)
    assert result["proxies"] == []
    assert result["proxy-groups"][-1]["name"] == PolicyNames.GLOBAL


def test_quic_rule_toggle():
    blocked = ConfigOverrider(FeatureFlags()).build_rules()
    assert blocked[0] == ConfigOverrider.QUIC_REJECT_RULE

    allowed = ConfigOverrider(FeatureFlags(quic=True)).build_rules()
    assert ConfigOverrider.QUIC_REJECT_RULE not in allowed
    assert allowed[-1] == f"MATCH,{PolicyNames.SELECT}"


def test_rules_only_target_known_groups():
    result = ConfigOverrider().override(SUBSCRIPTION)
    names = {group["name"] for group in result["proxy-groups"]} | {"REJECT", "DIRECT"}
    for rule in result["rules"]:
        parts = rule.split(",")
        target = parts[-2] if parts[-1] == "no-resolve" else parts[-1]
        assert target in names, rule


def test_dns_modes():
    redir = ConfigOverrider(FeatureFlags()).build_dns()
    assert redir["enhanced-mode"] == "redir-host"
    assert "fake-ip-filter" not in redir

    fake = ConfigOverrider(FeatureFlags(fake_ip=True, ipv6=True)).build_dns()
    assert fake["enhanced-mode"] == "fake-ip"
    assert fake["ipv6"] is True
    assert "geosite:cn" in fake["fake-ip-filter"]


def test_full_config_settings():
    partial = ConfigOverrider(FeatureFlags()).override(SUBSCRIPTION)
    assert "mixed-port" not in partial

    full = ConfigOverrider(FeatureFlags(full_config=True, keep_alive=True)).override(SUBSCRIPTION)
    assert full["mixed-port"] == 7890
    assert full["disable-keep-alive"] is False
    assert full["mode"] == "rule"


def test_override_does_not_share_static_tables():
    first = ConfigOverrider().override(SUBSCRIPTION)
    first["sniffer"]["skip-domain"].append("example.com")
    first["rule-providers"]["ADBlock"]["interval"] = 1

    second = ConfigOverrider().override(SUBSCRIPTION)
    assert "example.com" not in second["sniffer"]["skip-domain"]
    assert second["rule-providers"]["ADBlock"]["interval"] == 86400


def test_parse_cli_args():
    assert parse_cli_args(["landing", "threshold=2", "Regex=true"]) == {
        "landing": "true",
        "threshold": "2",
        "regex": "true",
    }


def test_parse_rejects_non_list_proxies():
    assert SubscriptionLoader.parse_content("proxies: 5") == {}
    assert SubscriptionLoader.parse_content("proxies: {a: 1}") == {}


def test_override_tolerates_scalar_proxies():
    result = ConfigOverrider().override({"proxies": 5})
    assert result["proxies"] == []
    assert result["proxy-groups"][-1]["name"] == PolicyNames.GLOBAL
