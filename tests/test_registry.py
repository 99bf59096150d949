"""Tests for the Consul agent registry."""
import logging

import pytest
import requests
from asserts import assert_equal, assert_false, assert_true

from mesosync.client import Reconciler, RegistrationEntry, RegistryError, StateDocument
from mesosync.registry import ConsulRegistry, build_registry

from fixtures import *  # noqa: F401, F403

logger = logging.getLogger(__name__)

AGENT = 'http://consul:8500'
REGISTER = f'{AGENT}/v1/agent/service/register'


def deregister_url(consul_id: str) -> str:
    return f'{AGENT}/v1/agent/service/deregister/{consul_id}'


def web(ports=(8000, 8001)) -> RegistrationEntry:
    return RegistrationEntry('mesos:F1:web.1', 'web', '10.0.0.2', tuple(ports), ('mesos', 'marathon'))


class TestRegister:
    """Test payloads sent to the agent."""

    def test_one_service_per_port(self):
        session = FakeSession()
        ConsulRegistry(AGENT + '/', session=session).register(web())

        payloads = [p for _, _, p in session.calls]
        assert_equal(session.urls(), [REGISTER, REGISTER])
        assert_equal(payloads[0], {'ID': 'mesos:F1:web.1:8000', 'Name': 'web', 'Address': '10.0.0.2',
                                   'Tags': ['mesos', 'marathon'], 'Port': 8000})
        assert_equal(payloads[1]['ID'], 'mesos:F1:web.1:8001')

    def test_portless_service(self):
        session = FakeSession()
        ConsulRegistry(AGENT, session=session).register(web(ports=()))

        _, _, payload = session.calls[0]
        assert_equal(payload['ID'], 'mesos:F1:web.1')
        assert_false('Port' in payload)

    def test_dropped_port_deregistered(self):
        session = FakeSession()
        registry = ConsulRegistry(AGENT, session=session)
        registry.register(web())
        registry.register(web(ports=(8000,)))

        assert_equal(session.urls()[-2:], [REGISTER, deregister_url('mesos:F1:web.1:8001')])

    def test_acl_token_header(self):
        session = FakeSession()
        ConsulRegistry(AGENT, token='secret', session=session)
        assert_equal(session.headers['X-Consul-Token'], 'secret')

    def test_agent_error(self):
        session = FakeSession({REGISTER: FakeResponse(status_code=500, text='boom')})
        with pytest.raises(RegistryError) as exc:
            ConsulRegistry(AGENT, session=session).register(web())
        assert_equal(exc.value.ids, ['mesos:F1:web.1'])

    def test_transport_error(self):
        session = FakeSession({REGISTER: requests.ConnectionError('refused')})
        with pytest.raises(RegistryError):
            ConsulRegistry(AGENT, session=session).register(web())

    def test_partial_register_failure_still_deregisters_accepted_port(self):
        session = FakeSession({REGISTER: [FakeResponse(), FakeResponse(status_code=500, text='boom')]})
        registry = ConsulRegistry(AGENT, session=session)
        with pytest.raises(RegistryError):
            registry.register(web())

        registry.deregister(['mesos:F1:web.1'])
        assert_equal(session.urls()[2:], [deregister_url('mesos:F1:web.1:8000')])

    def test_partial_register_failure_cleaned_up_by_reconcile(self):
        session = FakeSession({REGISTER: [FakeResponse(), FakeResponse(status_code=500, text='boom')]})
        reconciler = Reconciler(ConsulRegistry(AGENT, session=session))

        summary = reconciler.reconcile(StateDocument.from_json(make_state([make_task('web.1')])))
        assert_equal(summary['failed'], 1)

        reconciler.reconcile(StateDocument.from_json(make_state([])))
        assert_equal(session.urls()[2:], [deregister_url('mesos:F1:web.1:8000')])


class TestDeregister:
    """Test removal of services and partial failures."""

    def test_deregisters_every_port(self):
        session = FakeSession()
        registry = ConsulRegistry(AGENT, session=session)
        registry.register(web())
        registry.deregister(['mesos:F1:web.1'])

        assert_equal(session.urls()[-2:], [deregister_url('mesos:F1:web.1:8000'),
                                           deregister_url('mesos:F1:web.1:8001')])

    def test_unknown_id_deregistered_verbatim(self):
        session = FakeSession()
        ConsulRegistry(AGENT, session=session).deregister(['mesos:F1:gone'])
        assert_equal(session.urls(), [deregister_url('mesos:F1:gone')])

    def test_missing_service_is_not_an_error(self):
        session = FakeSession({deregister_url('mesos:F1:gone'): FakeResponse(status_code=404)})
        ConsulRegistry(AGENT, session=session).deregister(['mesos:F1:gone'])

    def test_partial_failure_names_failed_ids(self):
        session = FakeSession({deregister_url('b'): FakeResponse(status_code=500)})
        registry = ConsulRegistry(AGENT, session=session)

        with pytest.raises(RegistryError) as exc:
            registry.deregister(['a', 'b', 'c'])
        assert_equal(exc.value.ids, ['b'])
        assert_equal(session.urls(), [deregister_url(i) for i in ('a', 'b', 'c')])


class TestBuildRegistry:

    def test_without_cache(self):
        registry = build_registry(get_mirror_config(consul_url=AGENT))
        assert_equal(registry.url, AGENT)
        assert_false(registry.cache_supported())

    def test_with_cache(self, sqlite_config):
        registry = build_registry(sqlite_config)
        try:
            assert_true(registry.cache_supported())
            assert_equal(registry.load_cache(), [])
        finally:
            registry.store.dispose()
