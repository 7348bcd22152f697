from .assets import (
    GCSAssetStorage,
    LocalAssetStorage,
    StorageConfig,
    StoredAsset,
    decode_data_url,
    get_asset_storage,
    load_storage_config,
    parse_gcs_uri,
)

__all__ = [
    "GCSAssetStorage",
    "LocalAssetStorage",
    "StorageConfig",
    "StoredAsset",
    "decode_data_url",
    "get_asset_storage",
    "load_storage_config",
    "parse_gcs_uri",
]
