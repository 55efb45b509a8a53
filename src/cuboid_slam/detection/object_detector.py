"""2D object detection with YOLOv3 through OpenCV's DNN module.

The detections feed the object association step that creates and tracks
object landmarks; they are not consumed by local bundle adjustment
directly.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any

import cv2
import numpy as np


@dataclass
class Detection:
    """A detected object.

    Attributes:
        bbox: Axis-aligned box (x, y, width, height) in image pixels
        confidence: Class confidence in [0, 1]
        class_idx: Index of the detected class
    """

    bbox: tuple[int, int, int, int]
    confidence: float
    class_idx: int

    @property
    def center(self) -> tuple[float, float]:
        x, y, w, h = self.bbox
        return (x + w / 2.0, y + h / 2.0)


class ObjectDetector:
    """YOLOv3 object detector.

    Images are resized to a fixed 416x416 network input. Raw network
    outputs are filtered by class confidence and then by non-maximum
    suppression.
    """

    INPUT_WIDTH = 416
    INPUT_HEIGHT = 416

    def __init__(
        self,
        net: Any,
        conf_threshold: float = 0.5,
        nms_threshold: float = 0.45,
    ) -> None:
        """Initialize the detector around a loaded network.

        Args:
            net: A cv2.dnn network (or anything with the same interface)
            conf_threshold: Minimum class confidence to keep a box
            nms_threshold: IoU threshold for non-maximum suppression
        """
        self._net = net
        self._conf_threshold = conf_threshold
        self._nms_threshold = nms_threshold
        self._output_names = list(net.getUnconnectedOutLayersNames())

    @classmethod
    def from_darknet(
        cls,
        cfg_path: str | Path,
        weights_path: str | Path,
        conf_threshold: float = 0.5,
        nms_threshold: float = 0.45,
    ) -> ObjectDetector:
        """Load a Darknet model (.cfg + .weights).

        Raises:
            FileNotFoundError: If either file doesn't exist
        """
        for path in (cfg_path, weights_path):
            if not Path(path).exists():
                raise FileNotFoundError(f"Model file not found: {path}")

        net = cv2.dnn.readNetFromDarknet(str(cfg_path), str(weights_path))
        return cls(net, conf_threshold=conf_threshold, nms_threshold=nms_threshold)

    def detect(self, image: np.ndarray) -> list[Detection]:
        """Detect objects in a BGR image.

        Args:
            image: HxWx3 uint8 image

        Returns:
            Detections surviving confidence thresholding and NMS
        """
        blob = cv2.dnn.blobFromImage(
            image,
            scalefactor=1.0 / 255.0,
            size=(self.INPUT_WIDTH, self.INPUT_HEIGHT),
            mean=(0, 0, 0),
            swapRB=True,
            crop=False,
        )
        self._net.setInput(blob)
        outs = self._net.forward(self._output_names)
        return self.postprocess(image.shape, outs)

    def postprocess(
        self, image_shape: tuple[int, ...], outs: list[np.ndarray]
    ) -> list[Detection]:
        """Turn raw YOLO output rows into pixel-space detections.

        Each row is [cx, cy, w, h, objectness, class scores...] with the
        box normalized to [0, 1]. The best class of each row is kept if its
        score exceeds the confidence threshold.
        """
        height, width = image_shape[:2]
        boxes: list[list[int]] = []
        confidences: list[float] = []
        class_ids: list[int] = []

        for out in outs:
            out = np.asarray(out)
            for row in out.reshape(-1, out.shape[-1]):
                scores = row[5:]
                if len(scores) == 0:
                    continue
                class_idx = int(np.argmax(scores))
                confidence = float(scores[class_idx])
                if confidence <= self._conf_threshold:
                    continue

                center_x = row[0] * width
                center_y = row[1] * height
                box_w = int(row[2] * width)
                box_h = int(row[3] * height)
                left = int(center_x - box_w / 2)
                top = int(center_y - box_h / 2)

                boxes.append([left, top, box_w, box_h])
                confidences.append(confidence)
                class_ids.append(class_idx)

        if not boxes:
            return []

        keep = cv2.dnn.NMSBoxes(boxes, confidences, self._conf_threshold, self._nms_threshold)
        return [
            Detection(
                bbox=tuple(boxes[i]),
                confidence=confidences[i],
                class_idx=class_ids[i],
            )
            for i in np.asarray(keep, dtype=int).flatten()
        ]

    @property
    def conf_threshold(self) -> float:
        return self._conf_threshold

    @property
    def nms_threshold(self) -> float:
        return self._nms_threshold
