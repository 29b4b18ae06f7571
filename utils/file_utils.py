"""
File operation utilities
"""

import hashlib
from pathlib import Path
from typing import List

IMAGE_EXTENSIONS = {'.jpg', '.jpeg', '.png', '.bmp', '.tiff', '.webp'}

def get_image_files(directory: str, recursive: bool = True) -> List[str]:
    """Get all image files in directory, sorted by path"""
    path = Path(directory)
    candidates = path.rglob('*') if recursive else path.glob('*')

    image_files = [
        f for f in candidates
        if f.is_file() and f.suffix.lower() in IMAGE_EXTENSIONS
    ]

    return sorted(str(f) for f in image_files)

def file_digest(file_path: str) -> str:
    """SHA-256 of a file's contents"""
    digest = hashlib.sha256()
    with open(file_path, 'rb') as f:
        for chunk in iter(lambda: f.read(65536), b''):
            digest.update(chunk)
    return digest.hexdigest()

def format_file_size(size_bytes: int) -> str:
    """Format file size in human readable format"""
    for unit in ['B', 'KB', 'MB', 'GB', 'TB']:
        if size_bytes < 1024.0:
            return f"{size_bytes:.2f} {unit}"
        size_bytes /= 1024.0
    return f"{size_bytes:.2f} PB"
