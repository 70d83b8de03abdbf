import pytest

from mediaboot.config import Settings

from helpers import generate_rsa_key


@pytest.fixture(scope="session")
def rsa_key():
    return generate_rsa_key()


@pytest.fixture(scope="session")
def other_rsa_key():
    return generate_rsa_key()


@pytest.fixture
def settings(tmp_path):
    return Settings(
        DATA_DIR=tmp_path,
        TOKEN_CLIENT_ID="mediaboot-client",
        DEVICE_ID="device-1",
        DEVICE_NAME="test-box",
        AUTH_BASE_URL="https://auth.test/realms/media/",
        API_BASE_URL="https://api.test/",
        API_SERVER_BASE_URL="https://api.test/v1/server/",
        EXTERNAL_IP_URL="https://ip.test/?format=json",
    )
