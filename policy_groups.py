"""
Policy Group Engine
Classify proxy nodes by name, build reusable candidate lists, and assemble the ordered proxy-groups list
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from flags import FeatureFlags

logger = logging.getLogger(__name__)


NODE_SUFFIX = '节点'
HEALTH_CHECK_URL = 'https://cp.cloudflare.com/generate_204'

QURE_ICONS = 'https://gcore.jsdelivr.net/gh/Koolson/Qure@master/IconSet/Color/'
OVERRIDE_ICONS = 'https://gcore.jsdelivr.net/gh/powerfullz/override-rules@master/icons/'

# Built-in outbounds of the client, not policy groups
BUILTIN_DIRECT = 'DIRECT'
REJECT = 'REJECT'
REJECT_DROP = 'REJECT-DROP'


class PolicyNames:
    """Names of the singleton functional groups"""
    SELECT = '选择代理'
    MANUAL = '手动选择'
    FALLBACK = '故障转移'
    DIRECT = '直连'
    LANDING = '落地节点'
    LOW_COST = '低倍率节点'
    FRONT_PROXY = '前置代理'
    GLOBAL = 'GLOBAL'


class GroupType:
    SELECT = 'select'
    URL_TEST = 'url-test'
    LOAD_BALANCE = 'load-balance'
    FALLBACK = 'fallback'


def country_group_name(country: str) -> str:
    return f'{country}{NODE_SUFFIX}'


def union_patterns(*patterns: str) -> str:
    """Join regex sources with "|", hoisting any leading (?i) to the front"""
    ignore_case = False
    parts = []
    for pattern in patterns:
        if pattern.startswith('(?i)'):
            ignore_case = True
            pattern = pattern[4:]
        parts.append(pattern)
    joined = '|'.join(parts)
    return f'(?i){joined}' if ignore_case else joined


# ==================== Pattern Table ====================

@dataclass(frozen=True)
class CountryMeta:
    key: str
    pattern: str
    icon: str
    weight: Optional[int] = None


# Declaration order is the first-match order and the tie-break for equal weights
COUNTRY_METAS: Tuple[CountryMeta, ...] = (
    CountryMeta('香港', r'香港|港|HK|hk|Hong Kong|HongKong|hongkong|🇭🇰', QURE_ICONS + 'Hong_Kong.png', 10),
    CountryMeta('澳门', r'澳门|MO|Macau|🇲🇴', QURE_ICONS + 'Macao.png'),
    CountryMeta('台湾', r'台|新北|彰化|TW|Taiwan|🇹🇼', QURE_ICONS + 'Taiwan.png', 20),
    CountryMeta('新加坡', r'新加坡|坡|狮城|SG|Singapore|🇸🇬', QURE_ICONS + 'Singapore.png', 30),
    CountryMeta('日本', r'日本|川日|东京|大阪|泉日|埼玉|沪日|深日|JP|Japan|🇯🇵', QURE_ICONS + 'Japan.png', 40),
    CountryMeta('韩国', r'KR|Korea|KOR|首尔|韩|韓|🇰🇷', QURE_ICONS + 'Korea.png'),
    CountryMeta('美国', r'美国|美|US|United States|🇺🇸', QURE_ICONS + 'United_States.png', 50),
    CountryMeta('加拿大', r'加拿大|Canada|CA|🇨🇦', QURE_ICONS + 'Canada.png'),
    CountryMeta('英国', r'英国|United Kingdom|UK|伦敦|London|🇬🇧', QURE_ICONS + 'United_Kingdom.png', 60),
    CountryMeta('澳大利亚', r'澳洲|澳大利亚|AU|Australia|🇦🇺', QURE_ICONS + 'Australia.png'),
    CountryMeta('德国', r'德国|德|DE|Germany|🇩🇪', QURE_ICONS + 'Germany.png', 70),
    CountryMeta('法国', r'法国|法|FR|France|🇫🇷', QURE_ICONS + 'France.png', 80),
    CountryMeta('俄罗斯', r'俄罗斯|俄|RU|Russia|🇷🇺', QURE_ICONS + 'Russia.png'),
    CountryMeta('泰国', r'泰国|泰|TH|Thailand|🇹🇭', QURE_ICONS + 'Thailand.png'),
    CountryMeta('印度', r'印度|IN|India|🇮🇳', QURE_ICONS + 'India.png'),
    CountryMeta('马来西亚', r'马来西亚|马来|MY|Malaysia|🇲🇾', QURE_ICONS + 'Malaysia.png'),
)

# (?i) is understood by both Python re and the client's filter fields
LOW_COST_PATTERN = r'(?i)0\.[0-5]|低倍率|省流|大流量|实验性'
LANDING_PATTERN = r'(?i)家宽|家庭|家庭宽带|商宽|商业宽带|星链|Starlink|落地'


@dataclass(frozen=True)
class GroupingConfig:
    """Immutable pattern table shared by every component

    Patterns are compiled on construction, so a malformed entry raises
    re.error right away instead of surfacing per node.
    """
    countries: Tuple[CountryMeta, ...] = COUNTRY_METAS
    landing_pattern: str = LANDING_PATTERN
    low_cost_pattern: str = LOW_COST_PATTERN
    _country_regex: Tuple[Tuple[str, 're.Pattern'], ...] = field(init=False, repr=False, compare=False)
    _landing_regex: 're.Pattern' = field(init=False, repr=False, compare=False)
    _low_cost_regex: 're.Pattern' = field(init=False, repr=False, compare=False)
    _by_key: Dict[str, CountryMeta] = field(init=False, repr=False, compare=False)

    def __post_init__(self):
        by_key: Dict[str, CountryMeta] = {}
        for meta in self.countries:
            if meta.key in by_key:
                raise ValueError(f'Duplicate country key in pattern table: {meta.key}')
            by_key[meta.key] = meta
        object.__setattr__(self, '_by_key', by_key)
        object.__setattr__(self, '_country_regex', tuple(
            (meta.key, re.compile(meta.pattern)) for meta in self.countries
        ))
        object.__setattr__(self, '_landing_regex', re.compile(self.landing_pattern))
        object.__setattr__(self, '_low_cost_regex', re.compile(self.low_cost_pattern))

    def meta(self, country: str) -> Optional[CountryMeta]:
        return self._by_key.get(country)

    def declaration_index(self, country: str) -> int:
        for index, meta in enumerate(self.countries):
            if meta.key == country:
                return index
        return len(self.countries)

    def is_landing(self, name: str) -> bool:
        return self._landing_regex.search(name) is not None

    def is_low_cost(self, name: str) -> bool:
        return self._low_cost_regex.search(name) is not None

    def match_country(self, name: str) -> Optional[str]:
        """Return the first declared country whose pattern matches the name"""
        for key, regex in self._country_regex:
            if regex.search(name):
                return key
        return None


DEFAULT_CONFIG = GroupingConfig()


# ==================== NodeClassifier ====================

@dataclass(frozen=True)
class CountryBucket:
    country: str
    nodes: Tuple[str, ...]


@dataclass(frozen=True)
class Classification:
    buckets: Tuple[CountryBucket, ...]
    landing_names: Tuple[str, ...]
    low_cost_names: Tuple[str, ...]

    def nodes_by_country(self) -> Dict[str, Tuple[str, ...]]:
        return {bucket.country: bucket.nodes for bucket in self.buckets}


class NodeClassifier:
    """Partition node names into country buckets, landing nodes and low-cost nodes"""

    @staticmethod
    def node_name(proxy: Any) -> str:
        if isinstance(proxy, Mapping):
            name = proxy.get('name')
        else:
            name = getattr(proxy, 'name', None)
        if name is None:
            return ''
        return name if isinstance(name, str) else str(name)

    @staticmethod
    def classify(nodes: Optional[Sequence[Any]], config: GroupingConfig = DEFAULT_CONFIG) -> Classification:
        """Single pass over nodes in input order

        Landing wins over low-cost, low-cost wins over any country, and among
        countries the earliest declared pattern wins. A node matching none of
        them is left out of every set. Anything other than a list or tuple
        counts as no nodes.
        """
        landing: List[str] = []
        low_cost: List[str] = []
        country_nodes: Dict[str, List[str]] = {}

        if not isinstance(nodes, (list, tuple)):
            nodes = ()

        for proxy in nodes:
            name = NodeClassifier.node_name(proxy)
            if config.is_landing(name):
                landing.append(name)
                continue
            if config.is_low_cost(name):
                low_cost.append(name)
                continue
            country = config.match_country(name)
            if country is not None:
                country_nodes.setdefault(country, []).append(name)

        buckets = tuple(
            CountryBucket(meta.key, tuple(country_nodes[meta.key]))
            for meta in config.countries
            if meta.key in country_nodes
        )

        for bucket in buckets:
            logger.debug(f"  {bucket.country}: {len(bucket.nodes)} nodes")
        logger.debug(f"Landing nodes: {len(landing)}, low-cost nodes: {len(low_cost)}")

        return Classification(buckets, tuple(landing), tuple(low_cost))


# ==================== PolicyGroup ====================

@dataclass(frozen=True)
class HealthCheck:
    url: str = HEALTH_CHECK_URL
    interval: Optional[int] = None
    tolerance: Optional[int] = None
    lazy: Optional[bool] = None

    def to_dict(self) -> dict:
        data: Dict[str, Any] = {'url': self.url}
        if self.interval is not None:
            data['interval'] = self.interval
        if self.tolerance is not None:
            data['tolerance'] = self.tolerance
        if self.lazy is not None:
            data['lazy'] = self.lazy
        return data


@dataclass(frozen=True)
class Enumerated:
    """Members listed by name"""
    proxies: Tuple[str, ...] = ()


@dataclass(frozen=True)
class RuntimeFiltered:
    """Members picked by the client at evaluation time (include-all)

    `proxies` holds extra names listed next to the filtered nodes.
    """
    filter: Optional[str] = None
    exclude_filter: Optional[str] = None
    proxies: Tuple[str, ...] = ()


Members = Union[Enumerated, RuntimeFiltered]


@dataclass(frozen=True)
class PolicyGroup:
    name: str
    type: str
    members: Members
    icon: str = ''
    health_check: Optional[HealthCheck] = None

    @property
    def candidates(self) -> Tuple[str, ...]:
        return self.members.proxies

    @property
    def include_all(self) -> bool:
        return isinstance(self.members, RuntimeFiltered)

    def to_dict(self) -> dict:
        """Mapping in the client's proxy-groups key spelling"""
        data: Dict[str, Any] = {'name': self.name}
        if self.icon:
            data['icon'] = self.icon
        data['type'] = self.type

        members = self.members
        if isinstance(members, RuntimeFiltered):
            data['include-all'] = True
            if members.filter:
                data['filter'] = members.filter
            if members.exclude_filter:
                data['exclude-filter'] = members.exclude_filter
            if members.proxies:
                data['proxies'] = list(members.proxies)
        else:
            data['proxies'] = list(members.proxies)

        if self.health_check is not None:
            data.update(self.health_check.to_dict())
        return data


# ==================== CandidateListBuilder ====================

Segment = Union[None, str, Sequence[str]]


def build_list(*segments: Segment) -> Tuple[str, ...]:
    """Concatenate the present segments in order; None and empty ones are skipped"""
    result: List[str] = []
    for segment in segments:
        if not segment:
            continue
        if isinstance(segment, str):
            result.append(segment)
        else:
            result.extend(segment)
    return tuple(result)


def low_cost_enabled(low_cost_present: bool, flags: FeatureFlags) -> bool:
    # In regex mode membership is decided by the client, so the group always exists
    return low_cost_present or flags.regex_filter


@dataclass(frozen=True)
class CandidateLists:
    selector: Tuple[str, ...]
    generic: Tuple[str, ...]
    direct_first: Tuple[str, ...]
    fallback: Tuple[str, ...]


class CandidateListBuilder:

    @staticmethod
    def build(country_group_names: Sequence[str], flags: FeatureFlags, low_cost_present: bool) -> CandidateLists:
        landing = PolicyNames.LANDING if flags.landing else None
        low_cost = PolicyNames.LOW_COST if low_cost_enabled(low_cost_present, flags) else None
        countries = tuple(country_group_names)

        selector = build_list(
            PolicyNames.FALLBACK,
            landing,
            countries,
            low_cost,
            PolicyNames.MANUAL,
            BUILTIN_DIRECT,
        )
        generic = build_list(
            PolicyNames.SELECT,
            countries,
            low_cost,
            PolicyNames.MANUAL,
            PolicyNames.DIRECT,
        )
        direct_first = build_list(
            PolicyNames.DIRECT,
            countries,
            low_cost,
            PolicyNames.SELECT,
            PolicyNames.MANUAL,
        )
        # No SELECT here: SELECT already lists FALLBACK
        fallback = build_list(
            landing,
            countries,
            low_cost,
            PolicyNames.MANUAL,
            BUILTIN_DIRECT,
        )
        return CandidateLists(selector, generic, direct_first, fallback)


# ==================== CountryGroupFactory ====================

class CountryGroupFactory:
    """One auto-test (or load-balance) group per surfaced country"""

    HEALTH_CHECK = HealthCheck(interval=60, tolerance=20, lazy=False)

    @staticmethod
    def exclude_filter(flags: FeatureFlags, config: GroupingConfig) -> str:
        if flags.landing:
            return union_patterns(config.landing_pattern, config.low_cost_pattern)
        return config.low_cost_pattern

    @staticmethod
    def build(countries: Sequence[str], classification: Classification, flags: FeatureFlags,
              config: GroupingConfig = DEFAULT_CONFIG) -> List[PolicyGroup]:
        """Enumerated members are the node names the classification put in each bucket"""
        group_type = GroupType.LOAD_BALANCE if flags.load_balance else GroupType.URL_TEST
        health_check = None if flags.load_balance else CountryGroupFactory.HEALTH_CHECK
        exclude = CountryGroupFactory.exclude_filter(flags, config)
        nodes_by_country = classification.nodes_by_country()

        groups = []
        for country in countries:
            meta = config.meta(country)
            if meta is None:
                continue

            if flags.regex_filter:
                members: Members = RuntimeFiltered(filter=meta.pattern, exclude_filter=exclude)
            else:
                members = Enumerated(nodes_by_country.get(country, ()))

            groups.append(PolicyGroup(
                name=country_group_name(country),
                type=group_type,
                members=members,
                icon=meta.icon,
                health_check=health_check,
            ))
        return groups


# ==================== Service Groups ====================

class Binding:
    GENERIC = 'generic'
    DIRECT_FIRST = 'direct_first'
    FIXED = 'fixed'


@dataclass(frozen=True)
class RegionalOverride:
    """Curated list used when every country in `requires` is surfaced"""
    requires: Tuple[str, ...]
    proxies: Tuple[str, ...]


@dataclass(frozen=True)
class ServiceGroup:
    name: str
    icon: str
    binding: str = Binding.GENERIC
    proxies: Tuple[str, ...] = ()
    override: Optional[RegionalOverride] = None

    def candidates(self, lists: CandidateLists, countries: Sequence[str]) -> Tuple[str, ...]:
        if self.override is not None and all(c in countries for c in self.override.requires):
            return self.override.proxies
        if self.binding == Binding.FIXED:
            return self.proxies
        if self.binding == Binding.DIRECT_FIRST:
            return lists.direct_first
        return lists.generic


SERVICE_GROUPS: Tuple[ServiceGroup, ...] = (
    ServiceGroup('静态资源', QURE_ICONS + 'Cloudflare.png'),
    ServiceGroup('AI', OVERRIDE_ICONS + 'chatgpt.png'),
    ServiceGroup('Crypto', QURE_ICONS + 'Cryptocurrency_3.png'),
    ServiceGroup('Google', OVERRIDE_ICONS + 'Google.png'),
    ServiceGroup('Microsoft', OVERRIDE_ICONS + 'Microsoft_Copilot.png'),
    ServiceGroup('YouTube', QURE_ICONS + 'YouTube.png'),
    ServiceGroup(
        'Bilibili', QURE_ICONS + 'bilibili.png', Binding.DIRECT_FIRST,
        override=RegionalOverride(
            ('台湾', '香港'),
            (PolicyNames.DIRECT, country_group_name('台湾'), country_group_name('香港')),
        ),
    ),
    ServiceGroup(
        'Bahamut', QURE_ICONS + 'Bahamut.png',
        override=RegionalOverride(
            ('台湾',),
            (country_group_name('台湾'), PolicyNames.SELECT, PolicyNames.MANUAL, PolicyNames.DIRECT),
        ),
    ),
    ServiceGroup('Netflix', QURE_ICONS + 'Netflix.png'),
    ServiceGroup('TikTok', QURE_ICONS + 'TikTok.png'),
    ServiceGroup('Spotify', QURE_ICONS + 'Spotify.png'),
    ServiceGroup('E-Hentai', OVERRIDE_ICONS + 'Ehentai.png'),
    ServiceGroup('Telegram', QURE_ICONS + 'Telegram.png'),
    ServiceGroup(
        'Truth Social', OVERRIDE_ICONS + 'TruthSocial.png',
        override=RegionalOverride(
            ('美国',),
            (country_group_name('美国'), PolicyNames.SELECT, PolicyNames.MANUAL),
        ),
    ),
    ServiceGroup('OneDrive', OVERRIDE_ICONS + 'Onedrive.png'),
    ServiceGroup('PikPak', OVERRIDE_ICONS + 'PikPak.png'),
    ServiceGroup('SSH(22端口)', QURE_ICONS + 'Server.png'),
    ServiceGroup('搜狗输入法', OVERRIDE_ICONS + 'Sougou.png', Binding.FIXED,
                 (PolicyNames.DIRECT, REJECT)),
    ServiceGroup(PolicyNames.DIRECT, QURE_ICONS + 'Direct.png', Binding.FIXED,
                 (BUILTIN_DIRECT, PolicyNames.SELECT)),
    ServiceGroup('广告拦截', QURE_ICONS + 'AdBlack.png', Binding.FIXED,
                 (REJECT, REJECT_DROP, PolicyNames.DIRECT)),
)


# ==================== PolicyGroupAssembler ====================

class PolicyGroupAssembler:
    """Compose the final ordered proxy-groups list"""

    FALLBACK_HEALTH_CHECK = HealthCheck(interval=180, tolerance=20, lazy=False)
    LOW_COST_HEALTH_CHECK = HealthCheck()

    @staticmethod
    def surface_countries(buckets: Sequence[CountryBucket], threshold: int,
                          config: GroupingConfig = DEFAULT_CONFIG) -> Tuple[str, ...]:
        """Drop buckets below threshold, then order by weight

        Unweighted countries go last; equal weights keep declaration order.
        """
        kept = [bucket for bucket in buckets if len(bucket.nodes) >= threshold]

        def sort_key(bucket: CountryBucket):
            meta = config.meta(bucket.country)
            weight = meta.weight if meta is not None else None
            return (weight is None, weight or 0, config.declaration_index(bucket.country))

        return tuple(bucket.country for bucket in sorted(kept, key=sort_key))

    @staticmethod
    def functional_groups(lists: CandidateLists, classification: Classification, flags: FeatureFlags,
                          config: GroupingConfig = DEFAULT_CONFIG) -> List[PolicyGroup]:
        groups = [
            PolicyGroup(PolicyNames.SELECT, GroupType.SELECT, Enumerated(lists.selector),
                        icon=QURE_ICONS + 'Proxy.png'),
            PolicyGroup(PolicyNames.MANUAL, GroupType.SELECT, RuntimeFiltered(),
                        icon='https://gcore.jsdelivr.net/gh/shindgewongxj/WHATSINStash@master/icon/select.png'),
        ]

        if flags.landing:
            front = tuple(
                name for name in lists.selector
                if name not in (PolicyNames.LANDING, PolicyNames.FALLBACK)
            )
            if flags.regex_filter:
                front_members: Members = RuntimeFiltered(exclude_filter=config.landing_pattern, proxies=front)
                landing_members: Members = RuntimeFiltered(filter=config.landing_pattern)
            else:
                front_members = Enumerated(front)
                landing_members = Enumerated(classification.landing_names)

            groups.append(PolicyGroup(PolicyNames.FRONT_PROXY, GroupType.SELECT, front_members,
                                      icon=QURE_ICONS + 'Area.png'))
            groups.append(PolicyGroup(PolicyNames.LANDING, GroupType.SELECT, landing_members,
                                      icon=QURE_ICONS + 'Airport.png'))

        groups.append(PolicyGroup(
            PolicyNames.FALLBACK, GroupType.FALLBACK, Enumerated(lists.fallback),
            icon=QURE_ICONS + 'Bypass.png',
            health_check=PolicyGroupAssembler.FALLBACK_HEALTH_CHECK,
        ))
        return groups

    @staticmethod
    def low_cost_group(classification: Classification, flags: FeatureFlags,
                       config: GroupingConfig = DEFAULT_CONFIG) -> PolicyGroup:
        if flags.regex_filter:
            members: Members = RuntimeFiltered(filter=config.low_cost_pattern)
        else:
            members = Enumerated(classification.low_cost_names)
        return PolicyGroup(PolicyNames.LOW_COST, GroupType.URL_TEST, members,
                           icon=QURE_ICONS + 'Lab.png',
                           health_check=PolicyGroupAssembler.LOW_COST_HEALTH_CHECK)

    @staticmethod
    def catch_all_group(previous: Sequence[PolicyGroup]) -> PolicyGroup:
        return PolicyGroup(
            PolicyNames.GLOBAL, GroupType.SELECT,
            RuntimeFiltered(proxies=tuple(group.name for group in previous)),
            icon=QURE_ICONS + 'Global.png',
        )

    @staticmethod
    def assemble(nodes: Optional[Sequence[Any]], flags: Optional[FeatureFlags] = None,
                 config: GroupingConfig = DEFAULT_CONFIG) -> List[PolicyGroup]:
        """Generate the complete ordered proxy-groups list for a node snapshot"""
        flags = flags or FeatureFlags()
        classification = NodeClassifier.classify(nodes, config)

        countries = PolicyGroupAssembler.surface_countries(
            classification.buckets, flags.country_threshold, config
        )
        country_group_names = [country_group_name(country) for country in countries]
        low_cost_present = bool(classification.low_cost_names)

        lists = CandidateListBuilder.build(country_group_names, flags, low_cost_present)
        country_groups = CountryGroupFactory.build(countries, classification, flags, config)

        groups = PolicyGroupAssembler.functional_groups(lists, classification, flags, config)
        for service in SERVICE_GROUPS:
            groups.append(PolicyGroup(
                service.name, GroupType.SELECT,
                Enumerated(service.candidates(lists, countries)),
                icon=service.icon,
            ))

        if low_cost_enabled(low_cost_present, flags):
            groups.append(PolicyGroupAssembler.low_cost_group(classification, flags, config))
        groups.extend(country_groups)

        # Built last so it sees every other group
        groups.append(PolicyGroupAssembler.catch_all_group(groups))

        logger.info(f"Country groups: {len(country_groups)}, total proxy groups: {len(groups)}")
        return groups
