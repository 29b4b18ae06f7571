from dataclasses import dataclass, field
from typing import List
import yaml
from pathlib import Path

@dataclass
class EmbeddingConfig:
    """Configuration for the image embedding model"""
    model_name: str = "openai/clip-vit-base-patch32"
    dimension: int = 512  # Fixed per catalog, never inferred from entries
    image_size: int = 256
    use_gpu: bool = False


@dataclass
class RetrievalConfig:
    """Configuration for catalog ranking and result filtering"""
    distance_ceiling: float = 0.25  # Absolute admissibility cutoff
    tightening_ratio: float = 1.40  # Relative to the best match
    top_k: int = 10
    zoom_factors: List[float] = field(default_factory=lambda: [1.0, 2.0])


@dataclass
class IndexingConfig:
    """Configuration for live vector index maintenance"""
    index_name: str = "ImageVectorIndex"
    batch_size: int = 5
    yield_interval: float = 0.2  # Seconds slept after each committed batch


@dataclass
class SystemConfig:
    """System-wide configuration"""
    catalog_path: str = "data/plant_embeddings.json"
    database_path: str = "data/records.db"
    assets_dir: str = "data/assets"
    log_dir: str = "logs"
    log_level: str = "INFO"
    demo_mode: bool = True  # Plants served from the precomputed catalog

    # Embedding model
    embedding: EmbeddingConfig = field(
        default_factory=EmbeddingConfig
    )

    # Ranking policy
    retrieval: RetrievalConfig = field(
        default_factory=RetrievalConfig
    )

    # Live index maintenance
    indexing: IndexingConfig = field(
        default_factory=IndexingConfig
    )

    def validate(self) -> List[str]:
        """Return a list of configuration issues (empty when valid)"""
        issues = []

        if self.embedding.dimension < 1:
            issues.append(f"embedding.dimension must be >= 1: {self.embedding.dimension}")
        if self.embedding.image_size < 1:
            issues.append(f"embedding.image_size must be >= 1: {self.embedding.image_size}")
        if not 0 < self.retrieval.distance_ceiling <= 2:
            issues.append(
                f"retrieval.distance_ceiling must be in (0, 2]: {self.retrieval.distance_ceiling}"
            )
        if self.retrieval.tightening_ratio < 1:
            issues.append(
                f"retrieval.tightening_ratio must be >= 1: {self.retrieval.tightening_ratio}"
            )
        if self.retrieval.top_k < 1:
            issues.append(f"retrieval.top_k must be >= 1: {self.retrieval.top_k}")
        if not self.retrieval.zoom_factors:
            issues.append("retrieval.zoom_factors must not be empty")
        if self.indexing.batch_size < 1:
            issues.append(f"indexing.batch_size must be >= 1: {self.indexing.batch_size}")
        if self.indexing.yield_interval < 0:
            issues.append(
                f"indexing.yield_interval must be >= 0: {self.indexing.yield_interval}"
            )
        if self.log_level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            issues.append(f"Invalid log_level: {self.log_level}")

        return issues

    def save(self, path: str = "config.yaml"):
        """Save configuration to YAML file"""
        config_dict = {
            'catalog_path': self.catalog_path,
            'database_path': self.database_path,
            'assets_dir': self.assets_dir,
            'log_dir': self.log_dir,
            'log_level': self.log_level,
            'demo_mode': self.demo_mode,
            'embedding': {
                'model_name': self.embedding.model_name,
                'dimension': self.embedding.dimension,
                'image_size': self.embedding.image_size,
                'use_gpu': self.embedding.use_gpu
            },
            'retrieval': {
                'distance_ceiling': self.retrieval.distance_ceiling,
                'tightening_ratio': self.retrieval.tightening_ratio,
                'top_k': self.retrieval.top_k,
                'zoom_factors': list(self.retrieval.zoom_factors)
            },
            'indexing': {
                'index_name': self.indexing.index_name,
                'batch_size': self.indexing.batch_size,
                'yield_interval': self.indexing.yield_interval
            }
        }

        with open(path, 'w') as f:
            yaml.dump(config_dict, f, default_flow_style=False, indent=2)

    @classmethod
    def load(cls, path: str = "config.yaml") -> 'SystemConfig':
        """Load configuration from YAML file"""
        if not Path(path).exists():
            return cls()  # Return default config

        with open(path, 'r') as f:
            config_dict = yaml.safe_load(f) or {}

        config = cls()

        # Load system settings
        config.catalog_path = config_dict.get('catalog_path', config.catalog_path)
        config.database_path = config_dict.get('database_path', config.database_path)
        config.assets_dir = config_dict.get('assets_dir', config.assets_dir)
        config.log_dir = config_dict.get('log_dir', config.log_dir)
        config.log_level = config_dict.get('log_level', config.log_level)
        config.demo_mode = config_dict.get('demo_mode', config.demo_mode)

        # Load embedding settings
        if 'embedding' in config_dict:
            em = config_dict['embedding']
            config.embedding = EmbeddingConfig(
                model_name=em.get('model_name', config.embedding.model_name),
                dimension=em.get('dimension', config.embedding.dimension),
                image_size=em.get('image_size', config.embedding.image_size),
                use_gpu=em.get('use_gpu', config.embedding.use_gpu)
            )

        # Load retrieval settings
        if 'retrieval' in config_dict:
            rt = config_dict['retrieval']
            config.retrieval = RetrievalConfig(
                distance_ceiling=rt.get('distance_ceiling', config.retrieval.distance_ceiling),
                tightening_ratio=rt.get('tightening_ratio', config.retrieval.tightening_ratio),
                top_k=rt.get('top_k', config.retrieval.top_k),
                zoom_factors=list(rt.get('zoom_factors', config.retrieval.zoom_factors))
            )

        # Load indexing settings
        if 'indexing' in config_dict:
            ix = config_dict['indexing']
            config.indexing = IndexingConfig(
                index_name=ix.get('index_name', config.indexing.index_name),
                batch_size=ix.get('batch_size', config.indexing.batch_size),
                yield_interval=ix.get('yield_interval', config.indexing.yield_interval)
            )

        return config
