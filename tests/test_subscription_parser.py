import base64
import json

import pytest

from singnet.core.subscription_parser import (
    SubscriptionParseError, parse_link, parse_subscription,
    parse_userinfo_expiry, safe_b64decode
)

from conftest import THREE_SERVERS


def test_plain_links_keep_source_order():
    servers = parse_subscription(THREE_SERVERS)

    assert [s.label for s in servers] == ['DE 1', 'NL 1', 'US 1']
    assert [s.outbound['type'] for s in servers] == ['vless', 'trojan', 'shadowsocks']
    assert all(s.outbound['tag'] == 'proxy' for s in servers)


def test_base64_blob_is_decoded():
    blob = base64.b64encode(THREE_SERVERS.encode()).decode().rstrip('=')

    servers = parse_subscription(blob)

    assert len(servers) == 3


def test_vless_link_details():
    server = parse_link(
        'vless://uuid-1@host.example:8443?security=reality&sni=sni.example'
        '&pbk=KEY&sid=ab&fp=chrome&flow=xtls-rprx-vision#Reality'
    )

    assert server.label == 'Reality'
    outbound = server.outbound
    assert outbound['server'] == 'host.example'
    assert outbound['server_port'] == 8443
    assert outbound['uuid'] == 'uuid-1'
    assert outbound['flow'] == 'xtls-rprx-vision'
    assert outbound['tls']['server_name'] == 'sni.example'
    assert outbound['tls']['reality'] == {
        'enabled': True, 'public_key': 'KEY', 'short_id': 'ab'
    }
    assert outbound['tls']['utls']['fingerprint'] == 'chrome'


def test_vmess_link():
    payload = base64.b64encode(json.dumps({
        'add': 'vm.example', 'port': '443', 'id': 'uuid-2', 'aid': '0',
        'net': 'ws', 'path': '/v', 'host': 'cdn.example', 'tls': 'tls',
        'ps': 'VMess WS',
    }).encode()).decode()

    server = parse_link(f'vmess://{payload}')

    assert server.label == 'VMess WS'
    assert server.outbound['transport'] == {
        'type': 'ws', 'path': '/v', 'headers': {'Host': 'cdn.example'}
    }
    assert server.outbound['tls']['server_name'] == 'cdn.example'


def test_missing_label_falls_back_to_endpoint():
    server = parse_link('hy2://pw@hy.example:443')

    assert server.label == 'hysteria2 hy.example:443'


def test_unsupported_and_malformed_links_are_skipped():
    assert parse_link('wireguard://whatever') is None
    assert parse_link('vless://@nohost') is None
    assert parse_link('# comment') is None


def test_duplicate_labels_get_suffix():
    body = '\n'.join([
        'trojan://a@one.example:443#Same',
        'trojan://b@two.example:443#Same',
    ])

    servers = parse_subscription(body)

    assert [s.label for s in servers] == ['Same', 'Same (2)']


def test_singbox_document_skips_service_outbounds():
    document = json.dumps({'outbounds': [
        {'type': 'selector', 'tag': 'select', 'outbounds': ['a']},
        {'type': 'vless', 'tag': 'A', 'server': 'a.example', 'server_port': 443,
         'uuid': 'u'},
        {'type': 'direct', 'tag': 'direct'},
    ]})

    servers = parse_subscription(document)

    assert [s.label for s in servers] == ['A']
    assert servers[0].outbound['tag'] == 'proxy'


@pytest.mark.parametrize('body', [
    '', '   ', '!!!not base64!!!', '{broken json',
    '{"outbounds": 5}', '{"outbounds": {"type": "vless"}}',
])
def test_unusable_bodies_raise(body):
    with pytest.raises(SubscriptionParseError):
        parse_subscription(body)


def test_safe_b64decode_handles_urlsafe_without_padding():
    encoded = base64.urlsafe_b64encode(b'a?b>c').decode().rstrip('=')
    assert safe_b64decode(encoded) == 'a?b>c'


def test_userinfo_expiry():
    assert parse_userinfo_expiry('upload=1; download=2; total=3; expire=1700000000') == 1700000000
    assert parse_userinfo_expiry('upload=1') is None
    assert parse_userinfo_expiry('expire=0') is None
    assert parse_userinfo_expiry(None) is None


def vmess(**fields):
    data = {'add': 'vm.example', 'port': 443, 'id': 'u', **fields}
    return 'vmess://' + base64.b64encode(json.dumps(data).encode()).decode()


@pytest.mark.parametrize('fields', [{'ps': 123}, {'net': 5}, {'ps': ['a']}])
def test_vmess_with_wrongly_typed_fields_is_skipped(fields):
    assert parse_link(vmess(**fields)) is None


def test_vmess_payload_that_is_not_an_object_is_skipped():
    link = 'vmess://' + base64.b64encode(b'[1, 2]').decode()
    assert parse_link(link) is None


def test_non_string_tag_in_document_becomes_label():
    document = json.dumps({'outbounds': [
        {'type': 'trojan', 'tag': 7, 'server': 't.example', 'server_port': 443},
    ]})
    assert [s.label for s in parse_subscription(document)] == ['7']
