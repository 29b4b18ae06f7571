# core/feature_extractors.py

import logging
import threading
from typing import Optional

import torch
from transformers import CLIPProcessor, CLIPModel
import cv2
import numpy as np

logger = logging.getLogger(__name__)


class CLIPFeatureExtractor:
    """
    CLIP image embeddings - robust to framing and lighting changes

    The model is loaded on first use, so commands that never embed an
    image do not pay for it.
    """

    def __init__(self, model_name: str = "openai/clip-vit-base-patch32", device: Optional[str] = None):
        self.model_name = model_name
        self.device = device or ('cuda' if torch.cuda.is_available() else 'cpu')
        self.model = None
        self.processor = None
        self._load_lock = threading.Lock()

    def _ensure_model(self):
        with self._load_lock:
            if self.model is not None:
                return
            logger.info(f"Loading CLIP model {self.model_name} on {self.device}")
            self.processor = CLIPProcessor.from_pretrained(self.model_name)
            model = CLIPModel.from_pretrained(self.model_name)
            model.to(self.device)
            model.eval()
            self.model = model

    @torch.no_grad()
    def extract(self, image: np.ndarray) -> np.ndarray:
        """Extract an L2-normalized CLIP embedding from a BGR image"""
        self._ensure_model()

        # Convert BGR to RGB
        image_rgb = cv2.cvtColor(image, cv2.COLOR_BGR2RGB)

        # Process image
        inputs = self.processor(images=image_rgb, return_tensors="pt")
        inputs = {k: v.to(self.device) for k, v in inputs.items()}

        # Get embeddings
        image_features = self.model.get_image_features(**inputs)

        # Normalize
        image_features = image_features / image_features.norm(dim=-1, keepdim=True)

        return image_features.cpu().numpy().flatten()
