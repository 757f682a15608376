"""
Cold storage handler for backup archives.

Uploads archives to an Amazon Glacier vault:
- single upload_archive request up to MULTIPART_THRESHOLD
- multipart upload in PART_SIZE chunks above it

Every request carries the SHA-256 tree hash Glacier validates on receipt.
"""

import os
import logging
from typing import Optional, Callable

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import ClientError, BotoCoreError, NoCredentialsError, PartialCredentialsError

from .treehash import tree_hash, tree_hash_bytes


logger = logging.getLogger(__name__)

AUTH_ERROR_CODES = {
    'AccessDeniedException',
    'UnrecognizedClientException',
    'InvalidSignatureException',
    'ExpiredTokenException',
    'MissingAuthenticationTokenException',
    'IncompleteSignatureException'
}


class UploadError(Exception):
    """Raised when a cold storage operation fails."""
    pass


class NetworkError(UploadError):
    """Transient failure: connection problems, throttling, service errors."""
    pass


class AuthFailed(UploadError):
    """Credentials are missing, invalid or not allowed to use the vault."""
    pass


class VaultNotFound(UploadError):
    """The configured vault does not exist."""
    pass


def translate_client_error(e: ClientError, action: str) -> UploadError:
    """
    Map a botocore ClientError to the UploadError taxonomy.

    Args:
        e: The ClientError raised by boto3
        action: Short description used in the message

    Returns:
        UploadError subclass instance (not raised)
    """
    error_code = e.response.get('Error', {}).get('Code', 'Unknown')

    if error_code == 'ResourceNotFoundException':
        return VaultNotFound(f"Glacier {action} failed ({error_code}): {e}")
    if error_code in AUTH_ERROR_CODES:
        return AuthFailed(f"Glacier {action} failed ({error_code}): {e}")
    return NetworkError(f"Glacier {action} failed ({error_code}): {e}")


class GlacierStorage:
    """
    Handler for uploading backups to Amazon Glacier.
    """

    MULTIPART_THRESHOLD = 100 * 1024 * 1024  # 100MB
    PART_SIZE = 8 * 1024 * 1024  # must be 1MB times a power of two

    def __init__(self, region: str = 'us-east-2', access_key: Optional[str] = None,
                 secret_key: Optional[str] = None, connect_timeout: int = 60,
                 read_timeout: int = 300, max_attempts: int = 5):
        """
        Initialize Glacier storage handler.

        Args:
            region: AWS region (default: us-east-2)
            access_key: AWS access key ID (default: boto3 credential chain)
            secret_key: AWS secret access key (default: boto3 credential chain)
            connect_timeout: Seconds to wait for a connection
            read_timeout: Seconds to wait for a response
            max_attempts: botocore retry attempts per request
        """
        self.region = region
        self.multipart_threshold = self.MULTIPART_THRESHOLD
        self.part_size = self.PART_SIZE

        client_config = BotoConfig(
            connect_timeout=connect_timeout,
            read_timeout=read_timeout,
            retries={'max_attempts': max_attempts, 'mode': 'standard'}
        )

        try:
            self.glacier_client = boto3.client(
                'glacier',
                aws_access_key_id=access_key,
                aws_secret_access_key=secret_key,
                region_name=region,
                config=client_config
            )
        except Exception as e:
            raise UploadError(f"Failed to initialize Glacier client: {e}")

    def upload(self, local_path: str, vault_name: str, description: Optional[str] = None,
               cancellation_check: Optional[Callable] = None) -> str:
        """
        Upload archive to Glacier.

        Args:
            local_path: Path to local archive file
            vault_name: Target vault
            description: Archive description stored by Glacier
            cancellation_check: Optional function called between parts; it
                may raise to abort a multipart upload

        Returns:
            Glacier archive id

        Raises:
            UploadError: If upload fails
        """
        if not os.path.exists(local_path):
            raise UploadError(f"Local file not found: {local_path}")

        description = description or os.path.basename(local_path)

        try:
            file_size = os.path.getsize(local_path)
            checksum = tree_hash(local_path)

            if file_size > self.multipart_threshold:
                return self._multipart_upload(local_path, vault_name, description, file_size,
                                              checksum, cancellation_check)

            if cancellation_check:
                cancellation_check()
            return self._simple_upload(local_path, vault_name, description, checksum)

        except UploadError:
            raise
        except ClientError as e:
            raise translate_client_error(e, 'upload')
        except (NoCredentialsError, PartialCredentialsError) as e:
            raise AuthFailed(f"Glacier upload failed: {e}")
        except BotoCoreError as e:
            raise NetworkError(f"Glacier upload failed: {e}")
        except Exception as e:
            raise UploadError(f"Failed to upload to Glacier: {e}")

    def _simple_upload(self, local_path: str, vault_name: str, description: str, checksum: str) -> str:
        with open(local_path, 'rb') as f:
            response = self.glacier_client.upload_archive(
                vaultName=vault_name,
                accountId='-',
                archiveDescription=description,
                checksum=checksum,
                body=f
            )
        return response['archiveId']

    def _multipart_upload(self, local_path: str, vault_name: str, description: str, file_size: int,
                          checksum: str, cancellation_check: Optional[Callable] = None) -> str:
        """
        Upload large file using multipart upload with cancellation support.

        Glacier assembles parts by byte range; the completed archive is
        checked against the whole-file tree hash.
        """
        response = self.glacier_client.initiate_multipart_upload(
            vaultName=vault_name,
            accountId='-',
            archiveDescription=description,
            partSize=str(self.part_size)
        )
        upload_id = response['uploadId']

        try:
            with open(local_path, 'rb') as f:
                offset = 0

                while True:
                    # Check for cancellation before each chunk
                    if cancellation_check:
                        cancellation_check()

                    data = f.read(self.part_size)
                    if not data:
                        break

                    end = offset + len(data) - 1
                    self.glacier_client.upload_multipart_part(
                        vaultName=vault_name,
                        accountId='-',
                        uploadId=upload_id,
                        checksum=tree_hash_bytes(data),
                        range=f'bytes {offset}-{end}/*',
                        body=data
                    )
                    offset += len(data)

            response = self.glacier_client.complete_multipart_upload(
                vaultName=vault_name,
                accountId='-',
                uploadId=upload_id,
                archiveSize=str(file_size),
                checksum=checksum
            )
            return response['archiveId']

        except Exception:
            # Abort multipart upload on error or cancellation
            try:
                self.glacier_client.abort_multipart_upload(
                    vaultName=vault_name,
                    accountId='-',
                    uploadId=upload_id
                )
            except Exception as abort_error:
                logger.warning(f"Failed to abort multipart upload {upload_id}: {abort_error}")
            raise

    def ensure_vault(self, vault_name: str, create: bool = True) -> bool:
        """
        Make sure the vault exists.

        Args:
            vault_name: Vault to check
            create: Create the vault when it does not exist

        Returns:
            True if the vault was created, False if it already existed

        Raises:
            VaultNotFound: If the vault is missing and create is False
            UploadError: If the check or creation fails
        """
        try:
            result = self.glacier_client.describe_vault(accountId='-', vaultName=vault_name)
            logger.info(f"Vault exists: {result.get('VaultARN', vault_name)}")
            return False
        except ClientError as e:
            error = translate_client_error(e, 'describe vault')
            if not isinstance(error, VaultNotFound):
                raise error
            if not create:
                raise error
        except (NoCredentialsError, PartialCredentialsError) as e:
            raise AuthFailed(f"Glacier describe vault failed: {e}")
        except BotoCoreError as e:
            raise NetworkError(f"Glacier describe vault failed: {e}")

        logger.warning(f"Vault {vault_name} not found, creating it")
        try:
            result = self.glacier_client.create_vault(accountId='-', vaultName=vault_name)
        except ClientError as e:
            raise translate_client_error(e, 'create vault')
        except (NoCredentialsError, PartialCredentialsError) as e:
            raise AuthFailed(f"Glacier create vault failed: {e}")
        except BotoCoreError as e:
            raise NetworkError(f"Glacier create vault failed: {e}")

        logger.info(f"Created vault: {result.get('location', vault_name)}")
        return True
