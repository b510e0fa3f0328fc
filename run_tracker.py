#!/usr/bin/env python3
"""
AR Tracker 启动脚本
在视频文件或摄像头上运行平面marker跟踪或无标记跟踪

使用方法:
python run_tracker.py --marker marker.png            # 平面marker跟踪
python run_tracker.py --adhoc --source video.mp4     # 无标记跟踪
python run_tracker.py --help                         # 显示帮助信息
"""

import sys
import argparse
from pathlib import Path

import cv2

# 添加项目根目录到Python路径
project_root = Path(__file__).parent
sys.path.insert(0, str(project_root))


def parse_args(argv=None):
    parser = argparse.ArgumentParser(
        description="AR Tracker - 相机位姿跟踪",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
使用示例:
  # 摄像头0上跟踪marker
  python run_tracker.py --marker marker.png

  # 视频文件上的无标记跟踪
  python run_tracker.py --adhoc --source video.mp4 --config configs/adhoc.yaml

  # 只打印位姿，不显示窗口
  python run_tracker.py --marker marker.png --no-vis
        """
    )

    mode = parser.add_mutually_exclusive_group(required=True)
    mode.add_argument('--marker', type=str, help='marker图像路径，使用平面marker跟踪')
    mode.add_argument('--adhoc', action='store_true', help='使用无标记跟踪')

    parser.add_argument(
        '--config', '-c',
        type=str,
        default='configs/default.yaml',
        help='配置文件路径 (默认: configs/default.yaml)'
    )
    parser.add_argument(
        '--source', '-s',
        type=str,
        default='0',
        help='视频文件路径或摄像头编号 (默认: 0)'
    )
    parser.add_argument(
        '--no-vis',
        action='store_true',
        help='关闭可视化窗口'
    )
    parser.add_argument(
        '--log-level',
        type=str,
        default=None,
        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
        help='日志级别，覆盖配置文件'
    )
    return parser.parse_args(argv)


def open_source(source: str) -> cv2.VideoCapture:
    """数字视为摄像头编号，否则视为文件路径"""
    return cv2.VideoCapture(int(source) if source.isdigit() else source)


def create_tracker(args, config):
    from ar_tracker import AdHocTracker, PlanarTracker, ConfigManager

    camera_matrix = ConfigManager.camera_matrix(config)
    if args.adhoc:
        tracker = AdHocTracker(ConfigManager.build_tracker_config(config, 'adhoc_tracker'), camera_matrix)
    else:
        marker_image = cv2.imread(args.marker)
        if marker_image is None:
            raise FileNotFoundError(f"Cannot read marker image: {args.marker}")
        tracker = PlanarTracker(ConfigManager.build_tracker_config(config, 'planar_tracker'),
                                camera_matrix, marker_image=marker_image)

    dist_coeffs = ConfigManager.dist_coeffs(config)
    if dist_coeffs is not None:
        tracker.set_camera_matrix(camera_matrix, dist_coeffs)
    return tracker


def run(tracker, capture: cv2.VideoCapture, visualize: bool, logger):
    """读帧、提交、显示最新发布的结果"""
    tracker.set_debug(visualize)
    tracker.start()
    was_tracking = False

    try:
        while True:
            ok, frame = capture.read()
            if not ok:
                logger.info("Video source exhausted")
                break

            tracker.submit_frame(frame)
            snapshot = tracker.get_snapshot()

            if snapshot.has_pose != was_tracking:
                was_tracking = snapshot.has_pose
                if was_tracking:
                    logger.info(f"Pose available, camera at {snapshot.pose.camera_center().round(3)}")
                else:
                    logger.info("Pose lost")

            if not visualize:
                continue

            output = snapshot.output_frame if snapshot.output_frame is not None else frame
            cv2.imshow('AR Tracker', output)
            key = cv2.waitKey(1) & 0xFF
            if key in (ord('q'), 27):
                break
            if key == ord('r'):
                tracker.reset()
            if key == ord('n') and hasattr(tracker, 'request_new_map'):
                tracker.request_new_map()
    finally:
        tracker.stop()
        capture.release()
        if visualize:
            cv2.destroyAllWindows()

    stats = tracker.get_performance_stats()
    for key, values in stats.items():
        if 'mean' in values:
            logger.info(f"{key}: {values['mean']:.1f}ms avg over {values['count']} frames")


def main(argv=None):
    args = parse_args(argv)

    from ar_tracker import ConfigManager, setup_logging
    from ar_tracker.utils.config_manager import DEFAULT_CONFIG

    if Path(args.config).exists():
        config = ConfigManager.merge_configs(DEFAULT_CONFIG, ConfigManager.load_config(args.config))
    else:
        print(f"配置文件不存在: {args.config}，使用默认配置")
        config = ConfigManager.merge_configs(DEFAULT_CONFIG, {})

    log_config = ConfigManager.get_section(config, 'logging')
    logger = setup_logging(args.log_level or log_config['level'], log_config['log_file'])

    if not ConfigManager.validate_config(config):
        logger.error("Invalid configuration")
        return 1
    if ConfigManager.camera_matrix(config) is None:
        logger.error("camera.camera_matrix must be configured")
        return 1

    capture = open_source(args.source)
    if not capture.isOpened():
        logger.error(f"Cannot open video source: {args.source}")
        return 1

    try:
        tracker = create_tracker(args, config)
        run(tracker, capture, not args.no_vis, logger)
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
    except FileNotFoundError as e:
        logger.error(str(e))
        capture.release()
        return 1

    return 0


if __name__ == "__main__":
    sys.exit(main())
