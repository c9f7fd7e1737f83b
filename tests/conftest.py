import json
import socket

import pytest
import requests

import awsipinfo


def make_response(body, status=200, reason="OK"):
    resp = requests.models.Response()
    resp.status_code = status
    resp.reason = reason
    resp._content = body if isinstance(body, bytes) else json.dumps(body).encode("utf-8")
    resp.encoding = "utf-8"
    return resp


def entry(prefix, region="us-east-1", service="AMAZON", border_group=None):
    return awsipinfo.RangeEntry(
        prefix=prefix,
        region=region,
        service=service,
        network_border_group=border_group or region,
    )


def addrinfo(*ips):
    out = []
    for ip in ips:
        if ":" in ip:
            out.append((socket.AF_INET6, socket.SOCK_STREAM, 6, "", (ip, 0, 0, 0)))
        else:
            out.append((socket.AF_INET, socket.SOCK_STREAM, 6, "", (ip, 0)))
    return out


@pytest.fixture
def sample_ranges():
    return awsipinfo.IpRanges(
        sync_token="1700000000",
        create_date="2024-01-01-00-00-00",
        prefixes=(
            entry("3.4.12.4/32", region="eu-west-1"),
            entry("52.94.0.0/22", region="us-east-1", service="AMAZON"),
            entry("52.94.0.0/22", region="us-east-1", service="EC2"),
            entry("52.95.0.0/24", region="us-west-2", service="AMAZON"),
            entry("52.95.0.0/24", region="us-west-2", service="EC2"),
            entry("52.96.0.0/24", region="ap-south-1", service="AMAZON"),
            entry("52.96.0.0/24", region="ap-south-1", service="EC2"),
        ),
        ipv6_prefixes=(
            entry("2600:1f18::/33", region="us-east-1", service="AMAZON"),
            entry("2600:1f18::/33", region="us-east-1", service="EC2"),
        ),
    )


@pytest.fixture
def fake_dns(monkeypatch):
    """Install a getaddrinfo replacement; returns the list of looked-up names."""
    calls = []
    table = {}

    def fake_getaddrinfo(host, port, *args, **kwargs):
        calls.append(host)
        if host not in table:
            raise socket.gaierror(socket.EAI_NONAME, "Name or service not known")
        return addrinfo(*table[host])

    monkeypatch.setattr(socket, "getaddrinfo", fake_getaddrinfo)
    fake_getaddrinfo.calls = calls
    fake_getaddrinfo.table = table
    return fake_getaddrinfo
