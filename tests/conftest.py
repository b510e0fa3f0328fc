"""
pytest配置文件
定义测试夹具和合成场景
"""

import pytest
import sys
from pathlib import Path

import cv2
import numpy as np

# 添加项目路径
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

IMAGE_SIZE = (640, 480)
BACKGROUND = 90


@pytest.fixture
def camera_matrix():
    """640x480 合成相机内参"""
    return np.array([
        [500.0, 0.0, 320.0],
        [0.0, 500.0, 240.0],
        [0.0, 0.0, 1.0]
    ])


def make_marker_image(width=400, height=300, seed=7):
    """随机矩形/圆/线条组成的纹理marker"""
    rng = np.random.default_rng(seed)
    image = np.full((height, width), 200, dtype=np.uint8)

    for _ in range(90):
        x, y = int(rng.integers(0, width - 20)), int(rng.integers(0, height - 20))
        w, h = int(rng.integers(8, 60)), int(rng.integers(8, 60))
        cv2.rectangle(image, (x, y), (x + w, y + h), int(rng.integers(0, 255)), -1)
    for _ in range(40):
        center = (int(rng.integers(0, width)), int(rng.integers(0, height)))
        cv2.circle(image, center, int(rng.integers(4, 25)), int(rng.integers(0, 255)), -1)
    for _ in range(20):
        p1 = (int(rng.integers(0, width)), int(rng.integers(0, height)))
        p2 = (int(rng.integers(0, width)), int(rng.integers(0, height)))
        cv2.line(image, p1, p2, int(rng.integers(0, 255)), 2)

    cv2.rectangle(image, (0, 0), (width - 1, height - 1), 0, 4)
    return cv2.GaussianBlur(image, (3, 3), 0)


def warp_marker(marker, H, size=IMAGE_SIZE):
    """把marker按单应贴到平坦背景上"""
    return cv2.warpPerspective(
        marker, H, size, flags=cv2.INTER_LINEAR,
        borderMode=cv2.BORDER_CONSTANT, borderValue=BACKGROUND
    )


def marker_corners(marker):
    h, w = marker.shape[:2]
    return np.float32([[0, 0], [w, 0], [w, h], [0, h]])


@pytest.fixture
def marker_image():
    return make_marker_image()


@pytest.fixture
def scene_homography(marker_image):
    """marker -> 场景的中等透视变换"""
    dst = np.float32([[120, 100], [500, 90], [520, 380], [110, 370]])
    return cv2.getPerspectiveTransform(marker_corners(marker_image), dst)


@pytest.fixture
def marker_scene(marker_image, scene_homography):
    """(场景图像, 真实单应)"""
    return warp_marker(marker_image, scene_homography), scene_homography


@pytest.fixture
def point_scene(camera_matrix):
    """
    非共面3D点场景渲染器

    每个点渲染为9x9的块状随机纹理，第一视图中点在网格上，深度4~8。
    返回 render(R, t) -> (灰度图, 投影点)，相机模型 x_cam = R X + t。
    """
    rng = np.random.default_rng(3)
    K = camera_matrix

    us, vs = np.meshgrid(np.arange(90, 600, 52), np.arange(50, 440, 48))
    pixels = np.stack([us.ravel(), vs.ravel()], axis=1).astype(np.float64)
    pixels += rng.integers(-6, 7, size=pixels.shape)
    depths = rng.uniform(4.0, 8.0, size=len(pixels))

    points_3d = np.empty((len(pixels), 3))
    points_3d[:, 0] = (pixels[:, 0] - K[0, 2]) * depths / K[0, 0]
    points_3d[:, 1] = (pixels[:, 1] - K[1, 2]) * depths / K[1, 1]
    points_3d[:, 2] = depths

    patches = [
        cv2.resize(rng.integers(20, 236, size=(3, 3)).astype(np.uint8), (9, 9),
                   interpolation=cv2.INTER_NEAREST)
        for _ in range(len(points_3d))
    ]

    def render(R=np.eye(3), t=np.zeros(3)):
        cam = points_3d @ np.asarray(R).T + np.asarray(t).reshape(1, 3)
        projected = cam @ K.T
        projected = projected[:, :2] / projected[:, 2:3]

        image = np.full((IMAGE_SIZE[1], IMAGE_SIZE[0]), BACKGROUND, dtype=np.uint8)
        for (u, v), patch in zip(np.round(projected).astype(int), patches):
            if 4 <= u < IMAGE_SIZE[0] - 5 and 4 <= v < IMAGE_SIZE[1] - 5:
                image[v - 4:v + 5, u - 4:u + 5] = patch
        return image, projected

    render.points_3d = points_3d
    return render


@pytest.fixture
def planar_config():
    return {
        'min_bootstrap_matches': 15,
        'min_tracked_features': 10,
        'homography_reproj_threshold': 3.0,
        'bootstrap_min_inlier_ratio': 0.15,
        'tracking_min_inlier_ratio': 0.5,
        'marker_size': 1.0,
        'features': {'detector': 'orb', 'descriptor': 'orb', 'max_features': 1500, 'ratio_test': 0.8},
        'optical_flow': {'win_size': [21, 21], 'max_level': 3, 'fb_threshold': 1.0},
    }


@pytest.fixture
def adhoc_config():
    return {
        'min_bootstrap_features': 50,
        'min_tracked_features': 30,
        'min_bootstrap_motion_px': 10.0,
        'fundamental_threshold': 1.0,
        'fundamental_confidence': 0.99,
        'fundamental_min_inlier_ratio': 0.5,
        'max_reprojection_error': 4.0,
        'min_valid_ratio': 0.75,
        'min_parallax_deg': 1.0,
        'align_map_to_plane': False,
        'features': {'detector': 'gftt', 'max_features': 500, 'min_distance': 5},
        'optical_flow': {'win_size': [21, 21], 'max_level': 3, 'fb_threshold': 1.0},
        'pnp_solver': {'pnp_ransac_threshold': 4.0},
    }


def rotation_y(degrees):
    """绕y轴旋转矩阵"""
    R, _ = cv2.Rodrigues(np.array([0.0, np.radians(degrees), 0.0]))
    return R
