"""
配置管理器
统一的配置文件加载和管理
"""

import copy
import logging
import yaml
from typing import Dict, Any, Optional
from pathlib import Path

import numpy as np

logger = logging.getLogger('ARTracker.config')

# 各模块默认参数，YAML中的同名键覆盖这里的值
DEFAULT_CONFIG: Dict[str, Any] = {
    'camera': {
        'camera_matrix': None,          # 3x3 内参，行主序嵌套列表
        'dist_coeffs': None,
    },
    'features': {
        'detector': 'orb',
        'descriptor': 'orb',
        'max_features': 1000,
        'ratio_test': 0.8,
    },
    'optical_flow': {
        'win_size': [21, 21],
        'max_level': 3,
        'fb_threshold': 1.0,
    },
    'planar_tracker': {
        'min_bootstrap_matches': 15,
        'min_tracked_features': 10,
        'homography_reproj_threshold': 3.0,
        'bootstrap_min_inlier_ratio': 0.15,
        'tracking_min_inlier_ratio': 0.5,
        'marker_size': 1.0,
        'marker_max_dimension': 640,
    },
    'adhoc_tracker': {
        'min_bootstrap_features': 50,
        'min_tracked_features': 30,
        'min_bootstrap_motion_px': 10.0,
        'fundamental_threshold': 1.0,
        'fundamental_confidence': 0.99,
        'fundamental_min_inlier_ratio': 0.5,
        'max_reprojection_error': 4.0,
        'min_valid_ratio': 0.75,
        'min_parallax_deg': 1.0,
        'align_map_to_plane': True,
        'rebootstrap_policy': 'min_features',     # 'min_features' | 'inlier_ratio'
        'min_pnp_inlier_ratio': 0.5,
        'features': {'detector': 'gftt', 'max_features': 500},
        'pnp_solver': {'pnp_ransac_threshold': 4.0},
    },
    'tracker_pool': {
        'max_trackers': 4,
        'near': 0.01,
        'far': 100.0,
    },
    'logging': {
        'level': 'INFO',
        'log_file': None,
    },
}


class ConfigManager:
    """配置管理器"""

    @staticmethod
    def load_config(config_path: str) -> Dict[str, Any]:
        """
        加载YAML配置文件

        Args:
            config_path: 配置文件路径

        Returns:
            config: 配置字典
        """
        config_path = Path(config_path)
        if not config_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {config_path}")

        with open(config_path, 'r', encoding='utf-8') as f:
            config = yaml.safe_load(f) or {}

        # 处理继承关系
        if 'inherit_from' in config:
            parent_path = config_path.parent / config['inherit_from']
            parent_config = ConfigManager.load_config(parent_path)
            config = ConfigManager.merge_configs(parent_config, config)
            del config['inherit_from']  # 移除继承标记

        return config

    @staticmethod
    def merge_configs(base_config: Dict[str, Any], override_config: Dict[str, Any]) -> Dict[str, Any]:
        """递归合并配置字典"""
        merged = copy.deepcopy(base_config)

        for key, value in override_config.items():
            if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
                merged[key] = ConfigManager.merge_configs(merged[key], value)
            else:
                merged[key] = value

        return merged

    @staticmethod
    def get_section(config: Optional[Dict[str, Any]], name: str) -> Dict[str, Any]:
        """取出一个配置段，并以默认值补全"""
        defaults = DEFAULT_CONFIG.get(name, {})
        section = (config or {}).get(name) or {}
        return ConfigManager.merge_configs(defaults, section)

    @staticmethod
    def build_tracker_config(config: Optional[Dict[str, Any]], name: str) -> Dict[str, Any]:
        """
        组装跟踪器使用的扁平配置

        跟踪器段本身的键在顶层；features/optical_flow 作为子字典，
        跟踪器段内的同名子字典覆盖全局段。
        """
        tracker_config = ConfigManager.get_section(config, name)
        for shared in ('features', 'optical_flow'):
            tracker_config[shared] = ConfigManager.merge_configs(
                ConfigManager.get_section(config, shared), tracker_config.get(shared, {})
            )
        return tracker_config

    @staticmethod
    def camera_matrix(config: Optional[Dict[str, Any]]) -> Optional[np.ndarray]:
        """读取相机内参，未配置返回None"""
        camera = ConfigManager.get_section(config, 'camera')
        if camera.get('camera_matrix') is None:
            return None
        return np.array(camera['camera_matrix'], dtype=np.float64).reshape(3, 3)

    @staticmethod
    def dist_coeffs(config: Optional[Dict[str, Any]]) -> Optional[np.ndarray]:
        camera = ConfigManager.get_section(config, 'camera')
        if camera.get('dist_coeffs') is None:
            return None
        return np.array(camera['dist_coeffs'], dtype=np.float64).reshape(-1, 1)

    @staticmethod
    def validate_config(config: Dict[str, Any]) -> bool:
        """验证配置有效性"""
        required_sections = ['camera', 'planar_tracker', 'adhoc_tracker']

        for section in required_sections:
            if section not in config:
                logger.warning(f"Missing required section '{section}' in config")
                return False

        camera_matrix = config['camera'].get('camera_matrix')
        if camera_matrix is not None and np.array(camera_matrix).size != 9:
            logger.warning("camera.camera_matrix must have 9 elements")
            return False

        for section in ('planar_tracker', 'adhoc_tracker'):
            tracker = ConfigManager.get_section(config, section)
            if tracker['min_tracked_features'] < 4:
                logger.warning(f"{section}.min_tracked_features must be >= 4")
                return False

        policy = ConfigManager.get_section(config, 'adhoc_tracker')['rebootstrap_policy']
        if policy not in ('min_features', 'inlier_ratio'):
            logger.warning(f"Unknown adhoc_tracker.rebootstrap_policy '{policy}'")
            return False

        return True

    @staticmethod
    def save_config(config: Dict[str, Any], save_path: str):
        """保存配置到文件"""
        save_path = Path(save_path)
        save_path.parent.mkdir(parents=True, exist_ok=True)

        with open(save_path, 'w', encoding='utf-8') as f:
            yaml.dump(config, f, default_flow_style=False, allow_unicode=True, indent=2)
