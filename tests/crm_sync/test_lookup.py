from crm_sync.sync.errors import TransportError
from crm_sync.sync.lookup import LookupResolver, choose_lookup_field
from crm_sync.sync.providers.base import LookupFieldInfo


def _info(name, *targets, navigation=None, attribute_type="Lookup"):
    return LookupFieldInfo(
        logical_name=name,
        display_name=name,
        possible_targets=tuple(targets),
        navigation_properties=navigation or {},
        attribute_type=attribute_type,
    )


class TestBindingName:
    def test_polymorphic_lookup_uses_target_navigation(self):
        info = _info(
            "parentcustomerid",
            "account",
            "contact",
            navigation={"account": "parentcustomerid_account", "contact": "parentcustomerid_contact"},
            attribute_type="Customer",
        )

        assert info.is_polymorphic
        assert info.binding_name("Account") == "parentcustomerid_account"
        assert info.binding_name("lead") == "parentcustomerid"

    def test_single_navigation_is_used_for_plain_lookup(self):
        info = _info("new_regionid", "new_region", navigation={"new_region": "new_RegionId"})

        assert info.binding_name() == "new_RegionId"

    def test_falls_back_to_logical_name(self):
        assert _info("accountid", "account").binding_name("account") == "accountid"

    def test_customer_attribute_is_polymorphic(self):
        assert _info("customerid", "account", attribute_type="Customer").is_polymorphic


class TestChooseLookupField:
    def test_single_candidate_wins(self):
        only = _info("primarycontactid", "contact")

        assert choose_lookup_field([only], "contact", "something-else") is only

    def test_hint_prefix_selects_candidate(self):
        first = _info("createdby", "systemuser")
        second = _info("ownerid", "systemuser")

        assert choose_lookup_field([first, second], "systemuser", "OWNER") is second

    def test_defaults_to_first_candidate(self):
        first = _info("createdby", "systemuser")
        second = _info("modifiedby", "systemuser")

        assert choose_lookup_field([first, second], "systemuser", None) is first
        assert choose_lookup_field([], "systemuser", None) is None


class TestLookupResolver:
    def test_resolution_is_cached_per_pass(self, fake_provider, connection):
        fake_provider.register_lookup("contact", "parentcustomerid", "account")
        resolver = LookupResolver(fake_provider, connection)

        assert resolver.resolve("contact", "account") == "parentcustomerid"
        assert resolver.resolve("Contact", "ACCOUNT") == "parentcustomerid"
        assert len(fake_provider.calls_to("discover_lookup_fields")) == 1
        assert resolver.snapshot() == {"contact:account": ("parentcustomerid", "parentcustomerid")}

    def test_missing_lookup_is_cached_as_none(self, fake_provider, connection):
        resolver = LookupResolver(fake_provider, connection)

        assert resolver.resolve("contact", "account") is None
        assert resolver.resolve("contact", "account") is None
        assert len(fake_provider.calls_to("discover_lookup_fields")) == 1

    def test_provider_failure_is_not_cached(self, fake_provider, connection):
        fake_provider.register_lookup("contact", "parentcustomerid", "account")
        fake_provider.fail_on["discover_lookup_fields"] = TransportError("HTTP 503: busy", status_code=503)
        resolver = LookupResolver(fake_provider, connection)

        assert resolver.resolve("contact", "account") is None

        del fake_provider.fail_on["discover_lookup_fields"]
        assert resolver.resolve("contact", "account") == "parentcustomerid"
        assert len(fake_provider.calls_to("discover_lookup_fields")) == 2

    def test_clear_forgets_resolutions(self, fake_provider, connection):
        fake_provider.register_lookup("contact", "parentcustomerid", "account")
        resolver = LookupResolver(fake_provider, connection)
        resolver.resolve("contact", "account")

        resolver.clear()
        resolver.resolve("contact", "account")

        assert len(fake_provider.calls_to("discover_lookup_fields")) == 2

    def test_later_hint_does_not_change_cached_choice(self, fake_provider, connection, caplog):
        fake_provider.register_lookup("account", "primarycontactid", "contact")
        fake_provider.register_lookup("account", "new_billingcontactid", "contact")
        resolver = LookupResolver(fake_provider, connection)

        assert resolver.resolve("account", "contact", "primarycontact") == "primarycontactid"
        assert "does not match the cached field" not in caplog.text

        assert resolver.resolve("account", "contact", "new_billing") == "primarycontactid"
        assert resolver.resolve("account", "contact", "new_billing") == "primarycontactid"

        warnings = [record for record in caplog.records if "does not match the cached field" in record.getMessage()]
        assert len(warnings) == 1
        assert "'new_billing' for account:contact" in warnings[0].getMessage()
        assert len(fake_provider.calls_to("discover_lookup_fields")) == 1
