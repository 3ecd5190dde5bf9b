#!/usr/bin/env python3
"""
Thin Cache Node Entry Point

Starts one cache node of a cluster.

Usage:
    python -m thincache.server --node-id 1 --cluster "1=localhost:10800,2=localhost:10801"
    python -m thincache.server --node-id 2 --cluster "..." --partitions 256
    python -m thincache.server --debug

Without --cluster a single node cluster on --port is started.

Environment Variables:
    THIN_CACHE_HOST        - Server bind address
    THIN_CACHE_PORT        - Port of a single node cluster
    THIN_CACHE_PARTITIONS  - Partition count
    THIN_CACHE_DEBUG       - Enable debug mode (true/false)
    NODE_ID                - Node id (overridden by --node-id)
    CLUSTER                - Cluster topology (overridden by --cluster)
"""

import argparse
import asyncio
import logging
import os
import signal
import sys

from .cluster.config import ClusterConfig, ClusterTopology
from .config.settings import settings
from .network.tcp_server import CacheNodeServer


def parse_args(argv=None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Thin Cache: partitioned cache node",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )

    parser.add_argument(
        "--host",
        type=str,
        default=settings.HOST,
        help="Host address to bind to",
    )

    parser.add_argument(
        "--port",
        type=int,
        default=settings.PORT,
        help="Port of a single node cluster (ignored with --cluster)",
    )

    parser.add_argument(
        "--node-id",
        type=int,
        default=int(os.getenv('NODE_ID', '1')),
        help="Id of this node in the cluster",
    )

    parser.add_argument(
        "--cluster",
        type=str,
        default=os.getenv('CLUSTER', ''),
        help='Cluster topology, e.g. "1=localhost:10800,2=localhost:10801"',
    )

    parser.add_argument(
        "--partitions",
        type=int,
        default=settings.PARTITIONS,
        help="Number of partitions",
    )

    parser.add_argument(
        "--debug",
        action="store_true",
        default=settings.DEBUG,
        help="Enable debug logging",
    )

    return parser.parse_args(argv)


def setup_logging(debug: bool = False) -> None:
    """Configure logging based on debug flag."""
    level = logging.DEBUG if debug else getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO)

    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            logging.StreamHandler(sys.stdout),
        ]
    )


def build_config(args: argparse.Namespace) -> ClusterConfig:
    """Create this node's ClusterConfig from the parsed arguments."""
    if args.cluster:
        topology = ClusterTopology.from_string(args.cluster, num_partitions=args.partitions)
    else:
        topology = ClusterTopology({args.node_id: ("localhost", args.port)}, num_partitions=args.partitions)
    return ClusterConfig(args.node_id, topology)


async def run_node(server: CacheNodeServer) -> None:
    """Serve until SIGTERM/SIGINT, then stop the node."""
    logger = logging.getLogger(__name__)
    loop = asyncio.get_running_loop()
    stopping = asyncio.Event()

    if sys.platform != 'win32':
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, stopping.set)

    serve_task = asyncio.create_task(server.start())
    stop_task = asyncio.create_task(stopping.wait())
    await asyncio.wait({serve_task, stop_task}, return_when=asyncio.FIRST_COMPLETED)

    if serve_task.done():
        # Bind failures end up here
        stop_task.cancel()
        serve_task.result()
        return

    logger.info("Shutdown requested, stopping node...")
    await server.stop()
    serve_task.cancel()
    await asyncio.gather(serve_task, return_exceptions=True)


def main(argv=None) -> None:
    """Main entry point for a cache node."""
    args = parse_args(argv)

    setup_logging(debug=args.debug)
    logger = logging.getLogger(__name__)

    cluster_config = build_config(args)
    server = CacheNodeServer(cluster_config, host=args.host)

    logger.info(f"Starting thin cache node {cluster_config.node_id}")
    logger.info(f"  Bind: {args.host}:{server.port}")
    logger.info(f"  Topology: {cluster_config.topology}")
    logger.info(f"  Owned partitions: {len(cluster_config.owned_partitions)}")

    try:
        asyncio.run(run_node(server))
    except KeyboardInterrupt:
        logger.info("Interrupted")
    finally:
        logger.info("Node stopped")


if __name__ == "__main__":
    main()
