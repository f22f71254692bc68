"""Unit tests for Route53DNSProvider."""

from unittest.mock import MagicMock, patch

import pytest
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    EndpointConnectionError,
    NoCredentialsError,
)

from route53_ddns.cli import (
    AwsCredentials,
    ManagedRecord,
    NotFoundError,
    ProviderUnavailableError,
    RecordType,
    RecordValidationError,
    Route53DNSProvider,
    ThrottledError,
    UnauthorizedError,
)

RECORD = ManagedRecord(zone_id="Z123", name="home.example.com", record_type=RecordType.A, ttl=60)


def client_error(code: str, status: int = 400, operation: str = "ChangeResourceRecordSets"):
    return ClientError(
        {
            "Error": {"Code": code, "Message": f"{code} happened"},
            "ResponseMetadata": {"HTTPStatusCode": status},
        },
        operation,
    )


class TestRoute53Upsert:
    """Tests for Route53 upsert_record."""

    def test_upsert_sends_single_upsert_change(self) -> None:
        """The change batch is an UPSERT of the record with one value."""
        client = MagicMock()
        client.change_resource_record_sets.return_value = {
            "ChangeInfo": {"Id": "/change/C2682N5HXP0BZ4", "Status": "PENDING"}
        }
        provider = Route53DNSProvider(client=client)

        result = provider.upsert_record(RECORD, "5.6.7.8")

        assert result.value == "5.6.7.8"
        assert result.change_id == "C2682N5HXP0BZ4"
        assert result.status == "PENDING"
        kwargs = client.change_resource_record_sets.call_args.kwargs
        assert kwargs["HostedZoneId"] == "Z123"
        changes = kwargs["ChangeBatch"]["Changes"]
        assert changes == [
            {
                "Action": "UPSERT",
                "ResourceRecordSet": {
                    "Name": "home.example.com.",
                    "Type": "A",
                    "TTL": 60,
                    "ResourceRecords": [{"Value": "5.6.7.8"}],
                },
            }
        ]

    def test_upsert_aaaa_record(self) -> None:
        """AAAA records carry their type through to the change batch."""
        client = MagicMock()
        client.change_resource_record_sets.return_value = {"ChangeInfo": {"Id": "C1"}}
        provider = Route53DNSProvider(client=client)
        record = ManagedRecord(zone_id="Z123", name="home.example.com", record_type=RecordType.AAAA)

        provider.upsert_record(record, "2001:db8::1")

        rrset = client.change_resource_record_sets.call_args.kwargs["ChangeBatch"]["Changes"][0][
            "ResourceRecordSet"
        ]
        assert rrset["Type"] == "AAAA"
        assert rrset["ResourceRecords"] == [{"Value": "2001:db8::1"}]

    @pytest.mark.parametrize(
        "error, expected",
        [
            (client_error("Throttling"), ThrottledError),
            (client_error("PriorRequestNotComplete"), ThrottledError),
            (client_error("SomethingNew", status=429), ThrottledError),
            (client_error("ServiceUnavailable", status=503), ProviderUnavailableError),
            (client_error("InternalFailure", status=500), ProviderUnavailableError),
            (client_error("AccessDenied", status=403), UnauthorizedError),
            (client_error("InvalidClientTokenId", status=403), UnauthorizedError),
            (client_error("SignatureDoesNotMatch", status=403), UnauthorizedError),
            (client_error("NoSuchHostedZone", status=404), NotFoundError),
            (client_error("InvalidChangeBatch"), RecordValidationError),
            (client_error("InvalidInput"), RecordValidationError),
            (NoCredentialsError(), UnauthorizedError),
            (
                EndpointConnectionError(endpoint_url="https://route53.amazonaws.com"),
                ProviderUnavailableError,
            ),
            (BotoCoreError(), ProviderUnavailableError),
        ],
    )
    def test_errors_are_translated(self, error: Exception, expected: type) -> None:
        """botocore errors map onto the provider error taxonomy."""
        client = MagicMock()
        client.change_resource_record_sets.side_effect = error
        provider = Route53DNSProvider(client=client)

        with pytest.raises(expected) as excinfo:
            provider.upsert_record(RECORD, "5.6.7.8")

        assert excinfo.value.__cause__ is error

    def test_transient_flag_follows_error_class(self) -> None:
        """Only throttling and availability errors are transient."""
        assert ThrottledError("x").transient
        assert ProviderUnavailableError("x").transient
        assert not UnauthorizedError("x").transient
        assert not NotFoundError("x").transient
        assert not RecordValidationError("x").transient


class TestRoute53HostedZones:
    """Tests for hosted zone lookup."""

    def test_find_hosted_zone_id_strips_prefix(self) -> None:
        """Zone ids come back without the /hostedzone/ prefix."""
        client = MagicMock()
        client.list_hosted_zones_by_name.return_value = {
            "HostedZones": [{"Id": "/hostedzone/Z0123456789", "Name": "example.com."}]
        }
        provider = Route53DNSProvider(client=client)

        assert provider.find_hosted_zone_id("Example.com") == "Z0123456789"
        client.list_hosted_zones_by_name.assert_called_once_with(
            DNSName="example.com.", MaxItems="1"
        )

    def test_find_hosted_zone_id_requires_exact_name(self) -> None:
        """ListHostedZonesByName returns the next zone when there is no match."""
        client = MagicMock()
        client.list_hosted_zones_by_name.return_value = {
            "HostedZones": [{"Id": "/hostedzone/Z999", "Name": "example.net."}]
        }
        provider = Route53DNSProvider(client=client)

        assert provider.find_hosted_zone_id("example.com") is None

    def test_find_hosted_zone_id_translates_errors(self) -> None:
        """Lookup failures raise typed provider errors."""
        client = MagicMock()
        client.list_hosted_zones_by_name.side_effect = client_error(
            "AccessDenied", status=403, operation="ListHostedZonesByName"
        )
        provider = Route53DNSProvider(client=client)

        with pytest.raises(UnauthorizedError):
            provider.find_hosted_zone_id("example.com")


class TestRoute53Connection:
    """Tests for Route53 connection check."""

    def test_test_connection_success(self) -> None:
        client = MagicMock()
        provider = Route53DNSProvider(client=client)

        assert provider.test_connection() is True
        client.get_hosted_zone_count.assert_called_once_with()

    def test_test_connection_failure(self) -> None:
        client = MagicMock()
        client.get_hosted_zone_count.side_effect = NoCredentialsError()
        provider = Route53DNSProvider(client=client)

        assert provider.test_connection() is False


class TestRoute53Client:
    """Tests for boto3 client construction."""

    def test_explicit_credentials_are_passed_to_session(self) -> None:
        """Static credentials build a session with those keys."""
        credentials = AwsCredentials("AKIAEXAMPLE", "secret", "token")

        with patch("route53_ddns.cli.boto3.Session") as mock_session:
            Route53DNSProvider(region="eu-west-1", credentials=credentials, timeout_seconds=3)

        mock_session.assert_called_once_with(
            region_name="eu-west-1",
            aws_access_key_id="AKIAEXAMPLE",
            aws_secret_access_key="secret",
            aws_session_token="token",
        )
        args, kwargs = mock_session.return_value.client.call_args
        assert args == ("route53",)
        assert kwargs["config"].retries == {"max_attempts": 1, "mode": "standard"}
        assert kwargs["config"].connect_timeout == 3

    def test_profile_is_used_without_credentials(self) -> None:
        with patch("route53_ddns.cli.boto3.Session") as mock_session:
            Route53DNSProvider(region="us-east-1", profile="dns")

        mock_session.assert_called_once_with(region_name="us-east-1", profile_name="dns")

    def test_credentials_repr_is_masked(self) -> None:
        """Secrets never end up in logs through repr/str."""
        credentials = AwsCredentials("AKIAEXAMPLE", "supersecret", "token")

        assert "supersecret" not in repr(credentials)
        assert "AKIAEXAMPLE" not in str(credentials)
