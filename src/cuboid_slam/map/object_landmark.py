"""Object landmark: a cuboid in the world tracked across keyframes."""

from __future__ import annotations

from dataclasses import dataclass

from ..geometry import Cuboid


@dataclass(eq=False)
class ObjectLandmark:
    """A rigid object represented by a 9-DoF cuboid in world coordinates.

    Attributes:
        id: Unique identifier for this landmark
        cuboid: Pose (T_world_object) and half-extents
        quality: Detection confidence in (0, 1]; object-pose residuals are
            weighted by (2 * quality)**2
        class_idx: Detector class of the object, -1 if unknown
    """

    id: int
    cuboid: Cuboid
    quality: float = 1.0
    class_idx: int = -1

    def get_cuboid(self) -> Cuboid:
        return self.cuboid

    def set_pose_and_dimension(self, cuboid: Cuboid) -> None:
        """Overwrite pose and dimensions (used when committing optimization)."""
        self.cuboid = cuboid.copy()

    def __repr__(self) -> str:
        return f"ObjectLandmark(id={self.id}, quality={self.quality:.2f}, {self.cuboid!r})"
