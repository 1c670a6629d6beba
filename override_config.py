"""
Clash Config Override Tool
Take the proxies of a subscription, generate policy groups, and merge them with the static rule/DNS/sniffer tables
"""

import base64
import logging
import sys
from typing import Any, Dict, List, Optional

import yaml

from flags import FeatureFlags
from policy_groups import DEFAULT_CONFIG, GroupingConfig, PolicyGroupAssembler, PolicyNames

logger = logging.getLogger(__name__)


OVERRIDE_RULESET = 'https://gcore.jsdelivr.net/gh/powerfullz/override-rules@master/ruleset/'
SKK_RULESET = 'https://ruleset.skk.moe/Clash/'


def _http_provider(behavior: str, fmt: str, url: str, path: str) -> dict:
    return {
        'type': 'http',
        'behavior': behavior,
        'format': fmt,
        'interval': 86400,
        'url': url,
        'path': path,
    }


# ==================== SubscriptionLoader ====================

class SubscriptionLoader:
    """Extract the proxies list from a Clash subscription body"""

    @staticmethod
    def decode_base64(content: str) -> str:
        """Safely decode Base64 (URL-safe alphabet and missing padding accepted)"""
        content = content.strip().replace('-', '+').replace('_', '/')
        missing_padding = len(content) % 4
        if missing_padding:
            content += '=' * (4 - missing_padding)
        try:
            return base64.b64decode(content).decode('utf-8')
        except (ValueError, UnicodeDecodeError):
            return ''

    @staticmethod
    def parse_content(content: str) -> dict:
        """Parse YAML directly, then Base64-wrapped YAML; {} when neither holds proxies"""
        try:
            data = yaml.safe_load(content)
            if isinstance(data, dict) and isinstance(data.get('proxies'), list):
                return data
        except yaml.YAMLError:
            pass

        decoded = SubscriptionLoader.decode_base64(content)
        if 'proxies:' in decoded:
            try:
                data = yaml.safe_load(decoded)
            except yaml.YAMLError as e:
                logger.warning(f"Base64 content is not valid YAML: {e}")
                return {}
            if isinstance(data, dict) and isinstance(data.get('proxies'), list):
                return data

        return {}

    @staticmethod
    def load_yaml(file_path: str) -> Optional[dict]:
        """Safely load a subscription file"""
        try:
            with open(file_path, 'r', encoding='utf-8') as f:
                content = f.read()
        except FileNotFoundError:
            logger.warning(f"File not found - {file_path}")
            return None
        except OSError as e:
            logger.warning(f"Failed to read file - {file_path}: {e}")
            return None

        config = SubscriptionLoader.parse_content(content)
        if not config:
            logger.warning(f"No proxies found - {file_path}")
            return None
        return config


# ==================== ConfigOverrider ====================

class ConfigOverrider:
    """Apply generated policy groups and static tables to a subscription config"""

    RULE_PROVIDERS = {
        'ADBlock': _http_provider('domain', 'mrs', 'https://adrules.top/adrules-mihomo.mrs',
                                  './ruleset/ADBlock.mrs'),
        'SogouInput': _http_provider('classical', 'text', SKK_RULESET + 'non_ip/sogouinput.txt',
                                     './ruleset/SogouInput.txt'),
        'StaticResources': _http_provider('domain', 'text', SKK_RULESET + 'domainset/cdn.txt',
                                          './ruleset/StaticResources.txt'),
        'CDNResources': _http_provider('classical', 'text', SKK_RULESET + 'non_ip/cdn.txt',
                                       './ruleset/CDNResources.txt'),
        'TikTok': _http_provider('classical', 'text', OVERRIDE_RULESET + 'TikTok.list',
                                 './ruleset/TikTok.list'),
        'EHentai': _http_provider('classical', 'text', OVERRIDE_RULESET + 'EHentai.list',
                                  './ruleset/EHentai.list'),
        'SteamFix': _http_provider('classical', 'text', OVERRIDE_RULESET + 'SteamFix.list',
                                   './ruleset/SteamFix.list'),
        'GoogleFCM': _http_provider('classical', 'text', OVERRIDE_RULESET + 'FirebaseCloudMessaging.list',
                                    './ruleset/FirebaseCloudMessaging.list'),
        'AdditionalFilter': _http_provider('classical', 'text', OVERRIDE_RULESET + 'AdditionalFilter.list',
                                           './ruleset/AdditionalFilter.list'),
        'AdditionalCDNResources': _http_provider('classical', 'text',
                                                 OVERRIDE_RULESET + 'AdditionalCDNResources.list',
                                                 './ruleset/AdditionalCDNResources.list'),
        'Crypto': _http_provider('classical', 'text', OVERRIDE_RULESET + 'Crypto.list',
                                 './ruleset/Crypto.list'),
    }

    BASE_RULES = [
        'RULE-SET,ADBlock,广告拦截',
        'RULE-SET,AdditionalFilter,广告拦截',
        'RULE-SET,SogouInput,搜狗输入法',
        'DOMAIN-SUFFIX,truthsocial.com,Truth Social',
        'RULE-SET,StaticResources,静态资源',
        'RULE-SET,CDNResources,静态资源',
        'RULE-SET,AdditionalCDNResources,静态资源',
        'RULE-SET,Crypto,Crypto',
        'RULE-SET,EHentai,E-Hentai',
        'RULE-SET,TikTok,TikTok',
        f'RULE-SET,SteamFix,{PolicyNames.DIRECT}',
        f'RULE-SET,GoogleFCM,{PolicyNames.DIRECT}',
        f'DOMAIN,services.googleapis.cn,{PolicyNames.SELECT}',
        'GEOSITE,CATEGORY-AI-!CN,AI',
        f'GEOSITE,GOOGLE-PLAY@CN,{PolicyNames.DIRECT}',
        f'GEOSITE,MICROSOFT@CN,{PolicyNames.DIRECT}',
        'GEOSITE,ONEDRIVE,OneDrive',
        'GEOSITE,MICROSOFT,Microsoft',
        'GEOSITE,TELEGRAM,Telegram',
        'GEOSITE,YOUTUBE,YouTube',
        'GEOSITE,GOOGLE,Google',
        'GEOSITE,NETFLIX,Netflix',
        'GEOSITE,SPOTIFY,Spotify',
        'GEOSITE,BAHAMUT,Bahamut',
        'GEOSITE,BILIBILI,Bilibili',
        'GEOSITE,PIKPAK,PikPak',
        f'GEOSITE,GFW,{PolicyNames.SELECT}',
        f'GEOSITE,CN,{PolicyNames.DIRECT}',
        f'GEOSITE,PRIVATE,{PolicyNames.DIRECT}',
        'GEOIP,NETFLIX,Netflix,no-resolve',
        'GEOIP,TELEGRAM,Telegram,no-resolve',
        f'GEOIP,CN,{PolicyNames.DIRECT}',
        f'GEOIP,PRIVATE,{PolicyNames.DIRECT}',
        'DST-PORT,22,SSH(22端口)',
        f'MATCH,{PolicyNames.SELECT}',
    ]

    QUIC_REJECT_RULE = 'AND,((DST-PORT,443),(NETWORK,UDP)),REJECT'

    SNIFFER = {
        'sniff': {
            'TLS': {'ports': [443, 8443]},
            'HTTP': {'ports': [80, 8080, 8880]},
            'QUIC': {'ports': [443, 8443]},
        },
        'override-destination': False,
        'enable': True,
        'force-dns-mapping': True,
        'skip-domain': [
            'Mijia Cloud',
            'dlg.io.mi.com',
            '+.push.apple.com',
        ],
    }

    FAKE_IP_FILTER = [
        'geosite:private',
        'geosite:connectivity-check',
        'geosite:cn',
        'Mijia Cloud',
        'dig.io.mi.com',
        'localhost.ptlogin2.qq.com',
        '*.icloud.com',
        '*.stun.*.*',
        '*.stun.*.*.*',
    ]

    GEOX_URL = {
        'geoip': 'https://gcore.jsdelivr.net/gh/Loyalsoldier/v2ray-rules-dat@release/geoip.dat',
        'geosite': 'https://gcore.jsdelivr.net/gh/Loyalsoldier/v2ray-rules-dat@release/geosite.dat',
        'mmdb': 'https://gcore.jsdelivr.net/gh/Loyalsoldier/geoip@release/Country.mmdb',
        'asn': 'https://gcore.jsdelivr.net/gh/Loyalsoldier/geoip@release/GeoLite2-ASN.mmdb',
    }

    def __init__(self, flags: Optional[FeatureFlags] = None, grouping: GroupingConfig = DEFAULT_CONFIG):
        self.flags = flags or FeatureFlags()
        self.grouping = grouping

    def build_rules(self) -> List[str]:
        rules = list(self.BASE_RULES)
        if not self.flags.quic:
            # Force QUIC back to TCP
            rules.insert(0, self.QUIC_REJECT_RULE)
        return rules

    def build_dns(self) -> dict:
        dns = {
            'enable': True,
            'ipv6': self.flags.ipv6,
            'prefer-h3': True,
            'enhanced-mode': 'fake-ip' if self.flags.fake_ip else 'redir-host',
            'default-nameserver': ['119.29.29.29', '223.5.5.5'],
            'nameserver': ['system', '223.5.5.5', '119.29.29.29', '180.184.1.1'],
            'fallback': [
                'quic://dns0.eu',
                'https://dns.cloudflare.com/dns-query',
                'https://dns.sb/dns-query',
                'tcp://208.67.222.222',
                'tcp://8.26.56.2',
            ],
            'proxy-server-nameserver': ['https://dns.alidns.com/dns-query', 'tls://dot.pub'],
        }
        if self.flags.fake_ip:
            dns['fake-ip-filter'] = list(self.FAKE_IP_FILTER)
        return dns

    def build_base_settings(self) -> dict:
        """Client settings emitted only for a full (kernel-ready) config"""
        return {
            'mixed-port': 7890,
            'redir-port': 7892,
            'tproxy-port': 7893,
            'routing-mark': 7894,
            'allow-lan': True,
            'ipv6': self.flags.ipv6,
            'mode': 'rule',
            'unified-delay': True,
            'tcp-concurrent': True,
            'find-process-mode': 'off',
            'log-level': 'info',
            'geodata-loader': 'standard',
            'external-controller': ':9999',
            'disable-keep-alive': not self.flags.keep_alive,
            'profile': {'store-selected': True},
        }

    def override(self, config: Optional[dict]) -> dict:
        """Return a new config: original proxies plus groups, rules and static tables"""
        proxies = (config or {}).get('proxies')
        if not isinstance(proxies, list):
            proxies = []
        result: Dict[str, Any] = {'proxies': proxies}

        groups = PolicyGroupAssembler.assemble(proxies, self.flags, self.grouping)
        logger.info(f"Total proxy nodes: {len(proxies)}, proxy groups: {len(groups)}")

        if self.flags.full_config:
            result.update(self.build_base_settings())

        result.update({
            'proxy-groups': [group.to_dict() for group in groups],
            'rule-providers': {name: dict(provider) for name, provider in self.RULE_PROVIDERS.items()},
            'rules': self.build_rules(),
            'sniffer': self._copy_sniffer(),
            'dns': self.build_dns(),
            'geodata-mode': True,
            'geox-url': dict(self.GEOX_URL),
        })
        return result

    def _copy_sniffer(self) -> dict:
        sniffer = dict(self.SNIFFER)
        sniffer['sniff'] = {proto: {'ports': list(opts['ports'])} for proto, opts in self.SNIFFER['sniff'].items()}
        sniffer['skip-domain'] = list(self.SNIFFER['skip-domain'])
        return sniffer


def parse_cli_args(argv: List[str]) -> Dict[str, str]:
    """key=value pairs; a bare key means "true" """
    args = {}
    for item in argv:
        if '=' in item:
            key, value = item.split('=', 1)
            args[key.strip().lower()] = value.strip()
        else:
            args[item.strip().lower()] = 'true'
    return args


# ==================== Main Entry ====================


if __name__ == '__main__':
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(levelname)s - %(message)s",
    )

    if len(sys.argv) < 2:
        print("Usage: python override_config.py <subscription.yaml> [loadbalance=true landing=true threshold=2 ...]")
        sys.exit(1)

    source = SubscriptionLoader.load_yaml(sys.argv[1])
    if source is None:
        sys.exit(1)

    flags = FeatureFlags.from_args(parse_cli_args(sys.argv[2:]))
    logger.info(f"Flags: {flags.model_dump()}")

    result = ConfigOverrider(flags).override(source)
    for group in result['proxy-groups']:
        members = group.get('proxies', [])
        mode = 'include-all' if group.get('include-all') else 'enumerated'
        logger.info(f"  {group['name']} ({group['type']}, {mode}): {len(members)} candidates")
    logger.info(f"Rules: {len(result['rules'])}")
