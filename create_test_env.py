import os
import subprocess
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent / "src"))

from btrfs_recovery.core.filesystem_state import FilesystemState


def create_btrfs_test_image(filename="test_btrfs.img", size_mb=200):
    """Create a Btrfs test image with DUP metadata and populate it."""
    print(f"Creating {filename} ({size_mb}MB)...")

    # 1. Create file
    subprocess.run(["dd", "if=/dev/zero", f"of={filename}", "bs=1M", f"count={size_mb}", "status=none"], check=True)

    # 2. Format as Btrfs, metadata mirrored on the same device
    subprocess.run(["mkfs.btrfs", "-f", "-m", "dup", filename], check=True, stdout=subprocess.DEVNULL)

    # 3. Mount (requires sudo)
    mount_point = Path("mnt_test")
    mount_point.mkdir(exist_ok=True)

    try:
        print("Mounting image (requires sudo)...")
        subprocess.run(["sudo", "mount", filename, str(mount_point)], check=True)

        # 4. Create files
        print("Creating files...")
        for i in range(20):
            (mount_point / f"file_{i}.txt").write_text(f"This is the content of file {i}. " * 50)

        subprocess.run(["sync"], check=True)

    finally:
        # 5. Unmount
        if os.path.ismount(mount_point):
            print("Unmounting...")
            subprocess.run(["sudo", "umount", str(mount_point)], check=True)
        mount_point.rmdir()


def corrupt_root_block(filename="test_btrfs.img", position=200):
    """Flip one byte inside the first copy of the root tree block."""
    with FilesystemState(filename) as state:
        bytenr = state.superblock.root
        infos = state.get_offsets_info([bytenr])[bytenr]
        if len(infos) < 2:
            print(f"Block {bytenr} has no mirror, not corrupting it")
            return None
        physical = infos[0].physical

    with open(filename, 'rb+') as f:
        f.seek(physical + position)
        value = f.read(1)[0]
        f.seek(physical + position)
        f.write(bytes([value ^ 0xff]))

    print(f"Corrupted block {bytenr} at physical offset {physical} (+{position})")
    return bytenr


if __name__ == "__main__":
    if os.geteuid() != 0:
        print("Note: This script requires sudo to mount/unmount the test image.")
        print("Relaunching with sudo...")
        subprocess.run(["sudo", sys.executable, __file__])
    else:
        create_btrfs_test_image()
        bytenr = corrupt_root_block()
        if bytenr is not None:
            print(f"\nDone! Try: btrfs-recovery fix test_btrfs.img -b {bytenr} -o fixed.bin")
