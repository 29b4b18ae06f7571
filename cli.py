# cli.py

import argparse
import json
import sys
from dataclasses import asdict
from typing import List

from config import SystemConfig
from core.records import Record
from main import build_service, initialize_directories, setup_logging
from utils.image_utils import load_image

def _load_config(args) -> SystemConfig:
    config = SystemConfig.load(args.config)
    issues = config.validate()
    if issues:
        print("Invalid configuration:")
        for issue in issues:
            print(f"  - {issue}")
        sys.exit(1)

    app_logger = setup_logging(config)
    initialize_directories(config)
    app_logger.log_operation("cli_command", command=args.command, config=args.config)
    return config

def _record_to_dict(record: Record) -> dict:
    return {'kind': record.kind, **asdict(record)}

def _print_records(records: List[Record], output: str = None):
    if not records:
        print("No confident match.")
    for i, record in enumerate(records, 1):
        line = f"{i}. {record.title}"
        if record.subtitle:
            line += f" ({record.subtitle})"
        if record.details:
            line += f" - {record.details}"
        print(line)

    # Save results to JSON if requested
    if output:
        with open(output, 'w') as f:
            json.dump([_record_to_dict(r) for r in records], f, indent=2)
        print(f"\nResults saved to: {output}")

def identify_command(args):
    """Identify the plant in an image"""
    config = _load_config(args)
    print(f"Identifying plant in: {args.image}")

    image = load_image(args.image)
    if image is None:
        print(f"Error: cannot read image {args.image}")
        sys.exit(1)

    service = build_service(config)
    service.start()
    try:
        records = service.identify_by_image(image)
    finally:
        service.stop()
        service.store.close()

    _print_records(records, args.output)

def search_command(args):
    """Full-text search over stored plants"""
    config = _load_config(args)
    service = build_service(config)
    try:
        records = service.identify_by_text(args.text)
    finally:
        service.store.close()

    _print_records(records, args.output)

def index_command(args):
    """Bring the live vector index up to date"""
    config = _load_config(args)
    if config.demo_mode:
        print("Demo mode: plants are served from the precomputed catalog, no live index.")
        return

    service = build_service(config)
    try:
        service.store.create_vector_index(config.indexing.index_name, config.embedding.dimension)
        report = service.maintainer.run_pass(config.indexing.index_name)
    finally:
        service.store.close()

    print(f"Indexed {report.indexed} documents in {report.batches} batches "
          f"({report.failed} failed, {report.duration_seconds:.1f}s)")

def load_demo_command(args):
    """Load demo documents into the record store"""
    from components.demo_loader import DemoDataLoader
    from core.database import RecordStore

    config = _load_config(args)
    store = RecordStore(config.database_path)
    try:
        report = DemoDataLoader(store, config.assets_dir).load_file(args.json_file)
    finally:
        store.close()

    print(f"Loaded {report.loaded} documents ({report.precomputed} plants "
          f"using precomputed embeddings, {report.skipped} skipped)")
    for name in report.missing_images:
        print(f"  Warning: missing image '{name}'")

def catalog_info_command(args):
    """Show catalog and store statistics"""
    config = _load_config(args)
    service = build_service(config)
    try:
        stats = service.get_statistics()
    finally:
        service.store.close()

    for key, value in stats.items():
        print(f"{key}: {value}")

    if args.output:
        with open(args.output, 'w') as f:
            json.dump(stats, f, indent=2)
        print(f"\nStatistics saved to: {args.output}")

def build_catalog_command(args):
    """Generate the precomputed catalog from a dataset directory"""
    from core.embedder import ImageEmbedder
    from core.feature_extractors import CLIPFeatureExtractor
    from scripts.build_catalog import build_catalog, save_catalog

    config = _load_config(args)
    extractor = CLIPFeatureExtractor(
        config.embedding.model_name,
        device='cuda' if config.embedding.use_gpu else 'cpu'
    )
    embedder = ImageEmbedder(extractor, config.embedding.dimension, config.embedding.image_size)

    entries = build_catalog(args.dataset, embedder)
    sidecar = save_catalog(entries, args.output or config.catalog_path, config.embedding.model_name)
    print(f"Metadata saved to: {sidecar}")

def main_cli(argv: List[str] = None):
    """Main CLI entry point"""
    parser = argparse.ArgumentParser(
        description="Plant Identification Engine - Command Line Interface"
    )
    parser.add_argument('--config', default='config.yaml', help='Configuration file')
    subparsers = parser.add_subparsers(dest='command', help='Commands')

    # Identify command
    identify_parser = subparsers.add_parser('identify', help='Identify the plant in an image')
    identify_parser.add_argument('image', help='Path to query image')
    identify_parser.add_argument('-o', '--output', help='Output JSON file for results')
    identify_parser.set_defaults(func=identify_command)

    # Text search command
    search_parser = subparsers.add_parser('search', help='Search plants by name or category')
    search_parser.add_argument('text', help='Search text (prefix match)')
    search_parser.add_argument('-o', '--output', help='Output JSON file for results')
    search_parser.set_defaults(func=search_command)

    # Index command
    index_parser = subparsers.add_parser('index', help='Update the live vector index')
    index_parser.set_defaults(func=index_command)

    # Demo data command
    demo_parser = subparsers.add_parser('load-demo', help='Load demo documents')
    demo_parser.add_argument('json_file', help='JSON array of documents')
    demo_parser.set_defaults(func=load_demo_command)

    # Catalog info command
    info_parser = subparsers.add_parser('catalog-info', help='Show catalog statistics')
    info_parser.add_argument('-o', '--output', help='Output JSON file for statistics')
    info_parser.set_defaults(func=catalog_info_command)

    # Catalog build command
    build_parser = subparsers.add_parser('build-catalog',
                                         help='Build the precomputed embedding catalog')
    build_parser.add_argument('dataset', help='Directory of plant images')
    build_parser.add_argument('-o', '--output', help='Catalog artifact path')
    build_parser.set_defaults(func=build_catalog_command)

    # Parse arguments
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return

    # Execute command
    args.func(args)

if __name__ == "__main__":
    main_cli()
