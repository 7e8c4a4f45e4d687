"""Tests for natural keys, tags and physical names."""

from tierstack.plan.models import ResourceDescriptor, ResourceKind
from tierstack.tagging.manager import (
    ENVIRONMENT_TAG,
    KIND_TAG,
    LOGICAL_NAME_TAG,
    PROJECT_TAG,
    NaturalKey,
    TagManager,
)


def key(name='web-lb', kind=ResourceKind.LOAD_BALANCER, project='shop', environment='test'):
    return NaturalKey(kind=kind, name=name, project=project, environment=environment)


class TestNaturalKey:

    def test_key_for_descriptor(self, tag_manager):
        descriptor = ResourceDescriptor(name='vpc', kind=ResourceKind.NETWORK)

        assert tag_manager.key_for(descriptor) == key('vpc', ResourceKind.NETWORK)
        assert str(tag_manager.key_for(descriptor)) == 'shop/test/Network/vpc'

    def test_keys_differ_across_environments(self):
        assert key(environment='dev') != key(environment='prod')


class TestTags:

    def test_identity_tags_cannot_be_overridden(self, tag_manager):
        tags = tag_manager.generate_tags(key(), {LOGICAL_NAME_TAG: 'spoofed', 'tier': 'web'})

        assert tags[LOGICAL_NAME_TAG] == 'web-lb'
        assert tags[KIND_TAG] == 'LoadBalancer'
        assert tags[PROJECT_TAG] == 'shop'
        assert tags[ENVIRONMENT_TAG] == 'test'
        assert tags['tier'] == 'web'
        assert tags['owner'] == 'platform'
        assert tags['Name'] == 'shop-test-web-lb'

    def test_resource_tags_override_project_tags(self, tag_manager):
        tags = tag_manager.generate_tags(key(), {'owner': 'web-team', 'port': 80})

        assert tags['owner'] == 'web-team'
        assert tags['port'] == '80'

    def test_tag_filters(self, tag_manager):
        filters = tag_manager.tag_filters(key())

        assert {'Name': f'tag:{LOGICAL_NAME_TAG}', 'Values': ['web-lb']} in filters
        assert len(filters) == 4

    def test_aws_tag_conversion(self):
        tags = {'a': '1', 'b': '2'}

        assert TagManager.from_aws_tags(TagManager.to_aws_tags(tags)) == tags
        assert TagManager.from_aws_tags(None) == {}

    def test_matches(self, tag_manager):
        tags = tag_manager.generate_tags(key())

        assert tag_manager.matches(key(), tags)
        assert not tag_manager.matches(key('other'), tags)
        assert not tag_manager.matches(key(environment='prod'), tags)

    def test_validate_tags(self, tag_manager):
        errors = tag_manager.validate_tags({'aws:owner': 'x', '': 'y', 'ok': 'z' * 300})

        assert len(errors) == 3


class TestPhysicalName:

    def test_basic_name(self, tag_manager):
        assert tag_manager.physical_name(key()) == 'shop-test-web-lb'

    def test_invalid_characters_collapse(self, tag_manager):
        assert tag_manager.physical_name(key('App_Tier..LB')) == 'shop-test-app-tier-lb'

    def test_case_preserved_when_requested(self, tag_manager):
        assert tag_manager.physical_name(key('AppLB'), lowercase=False) == 'shop-test-AppLB'

    def test_leading_digit_gets_prefix(self):
        manager = TagManager('1shop', 'test')

        assert manager.physical_name(key(project='1shop')) == 't-1shop-test-web-lb'

    def test_long_names_truncated_with_hash(self, tag_manager):
        long_key = key('a-very-long-logical-name-for-the-application-tier')

        name = tag_manager.physical_name(long_key, max_length=32)
        other = tag_manager.physical_name(key('a-very-long-logical-name-for-the-application-tie2'), max_length=32)

        assert len(name) <= 32
        assert name.startswith('shop-test-a-very-long')
        assert name != other
        assert name == tag_manager.physical_name(long_key, max_length=32)
