from pathlib import Path
from typing import Optional

from config import SystemConfig
from core.catalog import CatalogLoader
from core.database import RecordStore
from core.embedder import FeatureExtractor, ImageEmbedder
from components.identification_service import IdentificationService
from utils.logging_config import CustomLogger

def setup_logging(config: SystemConfig) -> CustomLogger:
    """Setup application logging"""
    return CustomLogger("plant_identification", config.log_dir, config.log_level)

def initialize_directories(config: SystemConfig):
    """Create necessary directories"""
    Path(config.database_path).parent.mkdir(parents=True, exist_ok=True)
    Path(config.catalog_path).parent.mkdir(parents=True, exist_ok=True)
    Path(config.log_dir).mkdir(parents=True, exist_ok=True)

def build_service(config: SystemConfig,
                  extractor: Optional[FeatureExtractor] = None) -> IdentificationService:
    """
    Wire the identification service

    Construction order: record store, catalog loader, embedder, service.
    The CLIP extractor is only created (and torch only imported) when no
    extractor is supplied.
    """
    if extractor is None:
        from core.feature_extractors import CLIPFeatureExtractor
        extractor = CLIPFeatureExtractor(
            config.embedding.model_name,
            device='cuda' if config.embedding.use_gpu else 'cpu'
        )

    store = RecordStore(config.database_path)
    catalog_loader = CatalogLoader(config.catalog_path, config.embedding.dimension)
    embedder = ImageEmbedder(extractor, config.embedding.dimension, config.embedding.image_size)

    return IdentificationService(config, store, catalog_loader, embedder)

def main():
    """Main application entry point"""
    from cli import main_cli
    main_cli()

if __name__ == "__main__":
    main()
