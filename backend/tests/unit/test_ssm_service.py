"""Unit tests for provider credentials in SSM Parameter Store."""

import boto3
import pytest

from coop_booking.models.errors import PaymentError
from coop_booking.services.ssm_service import SSMService, SSMServiceError

REGION = "ap-northeast-2"


class TestSSMService:
    def test_reads_provider_keys(self, ssm_provider_secrets) -> None:
        ssm = SSMService(boto3.client("ssm", region_name=REGION))

        keys = ssm.get_provider_secrets("test", "toss", "client_key", "secret_key")

        assert keys == {"client_key": "test_ck_toss", "secret_key": "test_sk_toss"}

    def test_values_are_cached(self, ssm_provider_secrets) -> None:
        client = boto3.client("ssm", region_name=REGION)
        ssm = SSMService(client)
        ssm.get_provider_secrets("test", "nicepay", "client_id")
        client.delete_parameter(Name="/booking/test/nicepay/client_id")

        assert ssm.get_provider_secrets("test", "nicepay", "client_id") == {
            "client_id": "test_client_nicepay"
        }

    def test_missing_parameter(self, aws) -> None:
        ssm = SSMService(boto3.client("ssm", region_name=REGION))

        with pytest.raises(SSMServiceError, match="/booking/test/toss/secret_key"):
            ssm.get_provider_secrets("test", "toss", "secret_key")


class TestGatewayCredentials:
    async def test_missing_keys_fail_as_provider_error(self, aws, settings) -> None:
        from coop_booking.gateways import TossPaymentsGateway

        gateway = TossPaymentsGateway(
            settings, ssm=SSMService(boto3.client("ssm", region_name=REGION))
        )

        with pytest.raises(PaymentError) as exc_info:
            await gateway.credentials()

        assert exc_info.value.provider_code == "CREDENTIALS_UNAVAILABLE"
