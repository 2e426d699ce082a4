"""
Subscription body parsing into sing-box outbounds
"""

import base64
import binascii
import json
import logging
import urllib.parse
from typing import Optional, List, Dict, Any

from .types import ServerDescriptor

logger = logging.getLogger(__name__)

# Outbound types in a sing-box document that are not servers
SERVICE_OUTBOUNDS = {'direct', 'block', 'dns', 'selector', 'urltest'}


class SubscriptionParseError(ValueError):
    """Subscription body yielded no usable servers"""
    pass


def safe_b64decode(data: str) -> str:
    """Decode standard or URL-safe base64 with missing padding"""
    data = data.strip().replace('-', '+').replace('_', '/')
    data = ''.join(data.split())
    padding = '=' * (-len(data) % 4)
    return base64.b64decode(data + padding).decode('utf-8')


def parse_subscription(body: str) -> List[ServerDescriptor]:
    """
    Parse a subscription body into an ordered list of servers

    Accepts a sing-box JSON document, a base64 blob of share links or
    plain share links one per line.

    Raises:
        SubscriptionParseError: nothing usable was found
    """
    text = (body or '').strip().lstrip('\ufeff')
    if not text:
        raise SubscriptionParseError("Subscription is empty")

    if text.startswith('{'):
        servers = _parse_singbox_document(text)
    else:
        if '://' not in text:
            try:
                text = safe_b64decode(text)
            except (binascii.Error, UnicodeDecodeError, ValueError):
                raise SubscriptionParseError(
                    "Subscription is neither share links nor base64"
                )
        servers = []
        for line in text.splitlines():
            server = parse_link(line)
            if server:
                servers.append(server)

    if not servers:
        raise SubscriptionParseError("No supported servers in subscription")

    return _dedupe_labels(servers)


def parse_link(link: str) -> Optional[ServerDescriptor]:
    """Parse one share link, returning None for unsupported input"""
    link = link.strip()
    if not link or link.startswith('#'):
        return None

    scheme = link.split('://', 1)[0].lower()
    parser = LINK_PARSERS.get(scheme)
    if parser is None:
        logger.warning(f"Unsupported link type: {link[:30]}...")
        return None

    try:
        outbound, label = parser(link)
    except (ValueError, KeyError, TypeError, AttributeError,
            binascii.Error, UnicodeDecodeError) as e:
        logger.warning(f"Skipping malformed {scheme} link: {e}")
        return None

    if not label:
        label = f"{outbound['type']} {outbound['server']}:{outbound['server_port']}"
    outbound['tag'] = 'proxy'
    return ServerDescriptor(label=label, outbound=outbound)


def parse_userinfo_expiry(header: Optional[str]) -> Optional[int]:
    """Extract expire= from a subscription-userinfo header"""
    if not header:
        return None
    for part in header.split(';'):
        key, _, value = part.strip().partition('=')
        if key.strip().lower() == 'expire':
            try:
                expire = int(float(value.strip()))
            except ValueError:
                return None
            return expire if expire > 0 else None
    return None


def _parse_singbox_document(text: str) -> List[ServerDescriptor]:
    try:
        document = json.loads(text)
    except json.JSONDecodeError as e:
        raise SubscriptionParseError(f"Invalid JSON subscription: {e}")

    if not isinstance(document, dict):
        raise SubscriptionParseError("JSON subscription is not an object")
    outbounds = document.get('outbounds', [])
    if not isinstance(outbounds, list):
        raise SubscriptionParseError("JSON subscription outbounds is not a list")

    servers = []
    for outbound in outbounds:
        if not isinstance(outbound, dict):
            continue
        if outbound.get('type') in SERVICE_OUTBOUNDS or 'server' not in outbound:
            continue
        label = str(outbound.get('tag') or (
            f"{outbound.get('type')} {outbound.get('server')}"
        ))
        item = dict(outbound)
        item['tag'] = 'proxy'
        servers.append(ServerDescriptor(label=label, outbound=item))
    return servers


def _dedupe_labels(servers: List[ServerDescriptor]) -> List[ServerDescriptor]:
    seen: Dict[str, int] = {}
    for server in servers:
        base = server.label
        if base in seen:
            seen[base] += 1
            server.label = f"{base} ({seen[base]})"
        else:
            seen[base] = 1
    return servers


def _fragment_label(parsed: urllib.parse.SplitResult) -> str:
    return urllib.parse.unquote(parsed.fragment).strip()


def _query(parsed: urllib.parse.SplitResult) -> Dict[str, str]:
    return {
        key: values[0]
        for key, values in urllib.parse.parse_qs(parsed.query).items()
    }


def _endpoint(parsed: urllib.parse.SplitResult) -> Dict[str, Any]:
    if not parsed.hostname or parsed.port is None:
        raise ValueError("missing host or port")
    return {'server': parsed.hostname, 'server_port': parsed.port}


def _tls(query: Dict[str, str], force: bool = False) -> Optional[Dict]:
    security = query.get('security', '').lower()
    if not force and security not in ('tls', 'reality', 'xtls'):
        return None

    tls: Dict[str, Any] = {'enabled': True}
    sni = query.get('sni') or query.get('peer') or query.get('host')
    if sni:
        tls['server_name'] = sni
    if query.get('allowInsecure') == '1' or query.get('insecure') == '1':
        tls['insecure'] = True
    if query.get('alpn'):
        tls['alpn'] = query['alpn'].split(',')
    if query.get('fp'):
        tls['utls'] = {'enabled': True, 'fingerprint': query['fp']}
    if security == 'reality':
        tls['reality'] = {
            'enabled': True,
            'public_key': query.get('pbk', ''),
            'short_id': query.get('sid', ''),
        }
    return tls


def _transport(network: str, host: str = '', path: str = '',
               service_name: str = '') -> Optional[Dict]:
    network = network or 'tcp'
    if not isinstance(network, str):
        raise ValueError(f"unsupported transport {network!r}")
    network = network.lower()
    if network == 'ws':
        transport: Dict[str, Any] = {'type': 'ws', 'path': path or '/'}
        if host:
            transport['headers'] = {'Host': host}
        return transport
    if network == 'grpc':
        return {'type': 'grpc', 'service_name': service_name}
    if network in ('h2', 'http'):
        transport = {'type': 'http', 'path': path or '/'}
        if host:
            transport['host'] = host.split(',')
        return transport
    if network == 'httpupgrade':
        return {'type': 'httpupgrade', 'path': path or '/', 'host': host}
    return None


def _parse_vless(link: str):
    parsed = urllib.parse.urlsplit(link)
    query = _query(parsed)
    outbound = {'type': 'vless', **_endpoint(parsed)}
    outbound['uuid'] = urllib.parse.unquote(parsed.username or '')
    if not outbound['uuid']:
        raise ValueError("missing uuid")
    if query.get('flow'):
        outbound['flow'] = query['flow']
    tls = _tls(query)
    if tls:
        outbound['tls'] = tls
    transport = _transport(
        query.get('type', 'tcp'), query.get('host', ''),
        query.get('path', ''), query.get('serviceName', '')
    )
    if transport:
        outbound['transport'] = transport
    return outbound, _fragment_label(parsed)


def _parse_trojan(link: str):
    parsed = urllib.parse.urlsplit(link)
    query = _query(parsed)
    outbound = {'type': 'trojan', **_endpoint(parsed)}
    outbound['password'] = urllib.parse.unquote(parsed.username or '')
    if not outbound['password']:
        raise ValueError("missing password")
    outbound['tls'] = _tls(query, force=True)
    transport = _transport(
        query.get('type', 'tcp'), query.get('host', ''),
        query.get('path', ''), query.get('serviceName', '')
    )
    if transport:
        outbound['transport'] = transport
    return outbound, _fragment_label(parsed)


def _parse_vmess(link: str):
    payload, _, fragment = link[len('vmess://'):].partition('#')
    data = json.loads(safe_b64decode(payload))
    if not isinstance(data, dict):
        raise ValueError("vmess payload is not an object")
    outbound = {
        'type': 'vmess',
        'server': data['add'],
        'server_port': int(data['port']),
        'uuid': data['id'],
        'security': data.get('scy') or 'auto',
        'alter_id': int(data.get('aid') or 0),
    }
    if data.get('tls') == 'tls':
        tls: Dict[str, Any] = {'enabled': True}
        if data.get('sni') or data.get('host'):
            tls['server_name'] = data.get('sni') or data.get('host')
        outbound['tls'] = tls
    transport = _transport(
        data.get('net', 'tcp'), data.get('host', ''), data.get('path', ''),
        data.get('path', '')
    )
    if transport:
        outbound['transport'] = transport
    label = data.get('ps') or urllib.parse.unquote(fragment)
    if not isinstance(label, str):
        raise ValueError("vmess ps is not a string")
    return outbound, label.strip()


def _parse_shadowsocks(link: str):
    body, _, fragment = link[len('ss://'):].partition('#')
    body = body.split('?', 1)[0].rstrip('/')
    if '@' in body:
        userinfo, server = body.rsplit('@', 1)
        userinfo = urllib.parse.unquote(userinfo)
        if ':' not in userinfo:
            userinfo = safe_b64decode(userinfo)
    else:
        userinfo, server = safe_b64decode(body).rsplit('@', 1)
    method, password = userinfo.split(':', 1)
    parsed = urllib.parse.urlsplit(f'//{server}')
    outbound = {
        'type': 'shadowsocks',
        **_endpoint(parsed),
        'method': method,
        'password': password,
    }
    return outbound, urllib.parse.unquote(fragment).strip()


def _parse_hysteria2(link: str):
    parsed = urllib.parse.urlsplit(link)
    query = _query(parsed)
    outbound = {'type': 'hysteria2', **_endpoint(parsed)}
    outbound['password'] = urllib.parse.unquote(parsed.username or '')
    outbound['tls'] = _tls(query, force=True)
    if query.get('obfs'):
        outbound['obfs'] = {
            'type': query['obfs'],
            'password': query.get('obfs-password', ''),
        }
    return outbound, _fragment_label(parsed)


LINK_PARSERS = {
    'vless': _parse_vless,
    'vmess': _parse_vmess,
    'trojan': _parse_trojan,
    'ss': _parse_shadowsocks,
    'hysteria2': _parse_hysteria2,
    'hy2': _parse_hysteria2,
}
