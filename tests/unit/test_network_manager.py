# Copyright 2024 Michael Maillet, Damien Davison, Sacha Davison
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Unit tests for the network segmentation resolver.
"""
import os

import pytest

from tierup.errors import AliasConflict
from tierup.MANAGERS.network_manager import NetworkManager

from conftest import parse


@pytest.fixture
def mgr(three_tier):
    return NetworkManager(parse(three_tier))


class TestNetworkManager:
    """Tests for NetworkManager."""

    def test_segments(self, mgr):
        assert mgr.members('frontend') == {'frontend', 'backend'}
        assert mgr.members('backend') == {'backend', 'db'}
        assert mgr.members('missing') == set()

    def test_shared_networks(self, mgr):
        assert mgr.shared_networks('frontend', 'backend') == {'frontend'}
        assert mgr.shared_networks('frontend', 'db') == set()

    def test_frontend_cannot_see_database(self, mgr):
        assert mgr.can_resolve('frontend', 'backend')
        assert not mgr.can_resolve('frontend', 'db')
        assert not mgr.can_resolve('frontend', 'mysql')
        assert not mgr.can_resolve('frontend', 'mysql_db')
        assert mgr.resolvable_peers('frontend') == {'backend'}

    def test_backend_sees_both_sides(self, mgr):
        assert mgr.resolvable_peers('backend') == {'frontend', 'db'}
        assert mgr.resolve('backend', 'mysql') == 'db'
        assert mgr.resolve('backend', 'mysql_db') == 'db'
        assert mgr.resolve('backend', 'db') == 'db'

    def test_database_cannot_see_frontend(self, mgr):
        assert mgr.resolvable_peers('db') == {'backend'}
        assert mgr.resolve('db', 'frontend') is None

    def test_resolution_is_symmetric(self, mgr):
        for a in ('frontend', 'backend', 'db'):
            for b in ('frontend', 'backend', 'db'):
                assert mgr.can_resolve(a, b) == mgr.can_resolve(b, a)

    def test_default_network(self):
        mgr = NetworkManager(parse({'services': {'a': {'image': 'x'}, 'b': {'image': 'y'}}}))
        assert mgr.resolvable_peers('a') == {'b'}
        assert mgr.members('default') == {'a', 'b'}

    def test_alias_conflict_with_canonical_name(self):
        content = {
            'services': {
                'web': {'image': 'x'},
                'api': {'image': 'y', 'networks': {'default': {'aliases': ['web']}}},
            },
        }
        with pytest.raises(AliasConflict):
            NetworkManager(parse(content))

    def test_get_service_discovery_env(self, mgr):
        env = mgr.get_service_discovery_env('backend')
        assert env['MYSQL_HOST'] == '127.0.0.1'
        assert env['MYSQL_PORT'] == '3306'
        assert env['MYSQL_DB_HOST'] == '127.0.0.1'
        assert env['FRONTEND_PORT'] == '5174'
        assert 'BACKEND_HOST' not in env

        frontend_env = mgr.get_service_discovery_env('frontend')
        assert frontend_env['BACKEND_PORT'] == '8080'
        assert 'DB_HOST' not in frontend_env
        assert 'MYSQL_HOST' not in frontend_env

    def test_generate_hosts_content(self, mgr):
        content = mgr.generate_hosts_file_content('backend')
        assert "localhost" in content
        assert "127.0.0.1 db mysql mysql_db" in content
        assert "127.0.0.1 frontend" in content
        assert "mysql" not in mgr.generate_hosts_file_content('frontend')

    def test_write_hosts_file(self, mgr, tmp_path):
        path = mgr.write_hosts_file('frontend', str(tmp_path / "hosts"))
        assert os.path.basename(path) == "frontend.hosts"
        with open(path) as f:
            assert "backend" in f.read()
